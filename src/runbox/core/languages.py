from __future__ import annotations

from typing import Any, Dict, Optional

import structlog

from .models import LanguageSpec

log = structlog.get_logger(__name__)

DEFAULT_LANGUAGES: Dict[str, Dict[str, Any]] = {
    "python": {"filename": "main.py", "image": "python:3.9-slim",
               "run": ["python", "{filename}"]},
    "javascript": {"filename": "main.js", "image": "node:16-alpine",
                   "run": ["node", "{filename}"]},
    "java": {"filename": "Main.java", "image": "openjdk:11-slim",
             "run": ["bash", "-c", "javac {filename} && java Main"]},
    "c": {"filename": "main.c", "image": "gcc:11.2",
          "run": ["bash", "-c", "gcc {filename} -o main && ./main"]},
    "cpp": {"filename": "main.cpp", "image": "gcc:11.2",
            "run": ["bash", "-c", "g++ {filename} -o main && ./main"]},
}


def _to_spec(name: str, raw: Dict[str, Any]) -> LanguageSpec:
    filename = str(raw["filename"])
    run = raw["run"]
    if isinstance(run, str):
        run = [run]
    return LanguageSpec(
        name=name,
        filename=filename,
        image=str(raw["image"]),
        run_command=tuple(str(part).format(filename=filename) for part in run),
    )


class LanguageTable:
    """
    Maps a language name to (filename, image, run command).
    Unknown names resolve to the default language.
    """

    def __init__(self, overrides: Optional[Dict[str, Any]] = None, default: str = "python"):
        merged = dict(DEFAULT_LANGUAGES)
        for name, raw in (overrides or {}).items():
            if not isinstance(raw, dict):
                log.warning("languages.override_ignored", language=name)
                continue
            base = merged.get(name.lower(), {})
            merged[name.lower()] = {**base, **raw}

        self._specs = {}
        for name, raw in merged.items():
            try:
                self._specs[name] = _to_spec(name, raw)
            except KeyError as e:
                log.warning("languages.entry_incomplete", language=name, missing=str(e))

        if default.lower() not in self._specs:
            raise ValueError(f"default language '{default}' is not configured")
        self.default = default.lower()

    def resolve(self, language: Optional[str]) -> LanguageSpec:
        key = (language or "").lower()
        return self._specs.get(key) or self._specs[self.default]

    def names(self):
        return sorted(self._specs)
