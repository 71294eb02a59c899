"""
wacast

Campaign send orchestration for bulk WhatsApp template messaging across
sharded recipient stores, plus before/after snapshot analytics.

The package is Prefect-free on purpose; Prefect wrappers live in flows/.
"""

__version__ = "0.3.0"
