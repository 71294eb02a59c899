"""
wacast.templates

Template lookup: name -> language + component structure.

Template authoring and approval happen in Meta Business Manager; this only
describes how to fill an already-approved template. Format of
config/templates.yaml:

  templates:
    promo_march:
      language: es
      header: {type: image, link: "https://cdn.example.com/promo.jpg"}
      body: ["Ana", "20%"]
      buttons:
        - {index: 0, sub_type: url, parameters: ["promo-march"]}
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

from .config import DEFAULT_TEMPLATES_FILE, load_yaml
from .errors import ConfigError

_MEDIA_TYPES = ("image", "video", "document")


@dataclass
class TemplateConfig:
    name: str
    language: str = "es"
    header: Optional[Dict[str, Any]] = None
    body: List[str] = field(default_factory=list)
    buttons: List[Dict[str, Any]] = field(default_factory=list)

    def components(self) -> List[Dict[str, Any]]:
        comps: List[Dict[str, Any]] = []

        if self.header:
            htype = (self.header.get("type") or "text").lower()
            if htype in _MEDIA_TYPES:
                link = self.header.get("link")
                if not link:
                    raise ConfigError(f"Template {self.name}: {htype} header needs a link")
                comps.append({"type": "header", "parameters": [{"type": htype, htype: {"link": link}}]})
            else:
                texts = self.header.get("parameters") or []
                if texts:
                    comps.append({"type": "header", "parameters": [{"type": "text", "text": str(t)} for t in texts]})

        if self.body:
            comps.append({"type": "body", "parameters": [{"type": "text", "text": str(t)} for t in self.body]})

        for b in self.buttons:
            comps.append(
                {
                    "type": "button",
                    "sub_type": b.get("sub_type", "url"),
                    "index": str(b.get("index", 0)),
                    "parameters": [{"type": "text", "text": str(p)} for p in (b.get("parameters") or [])],
                }
            )
        return comps


class TemplateRegistry:
    def __init__(self, templates: Dict[str, TemplateConfig]):
        self.templates = templates

    @classmethod
    def load(cls, path: Optional[Union[str, Path]] = None) -> "TemplateRegistry":
        p = path or os.environ.get("WACAST_TEMPLATES_FILE") or DEFAULT_TEMPLATES_FILE
        data = load_yaml(p)
        out: Dict[str, TemplateConfig] = {}
        for name, raw in (data.get("templates") or {}).items():
            raw = raw or {}
            out[name] = TemplateConfig(
                name=name,
                language=raw.get("language") or "es",
                header=raw.get("header"),
                body=list(raw.get("body") or []),
                buttons=list(raw.get("buttons") or []),
            )
        return cls(out)

    def get(self, name: str) -> TemplateConfig:
        tpl = self.templates.get(name)
        if tpl is None:
            raise ConfigError(f"Template {name!r} is not configured (known: {', '.join(sorted(self.templates)) or 'none'})")
        return tpl
