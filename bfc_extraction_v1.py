"""
Beckn Flow Conformance (BFC) - Extraction Engine
Version: 1.0.0

Turns a raw message into a flat named snapshot by evaluating a declarative
spec of JSON-path expressions. A path that fails to evaluate yields None
for its field only; extraction as a whole never raises.
"""

from dataclasses import dataclass, field
from functools import lru_cache
from pathlib import Path
from typing import Any, Dict, Mapping, Optional, Tuple
import logging
import threading

import yaml
from jsonpath_ng.ext import parse as jsonpath_parse

from bfc_ledger_v1 import ExtractionSpecError
from bfc_metrics import record_extraction_error

logger = logging.getLogger("BFC.Extraction")

SAVE_DATA_KEY = 'save-data'

# ============================================
# EXTRACTION SPEC
# ============================================

@dataclass(frozen=True)
class ExtractionSpec:
    """Immutable field-name -> path-expression table for one action."""
    domain: str
    version: str
    action: str
    paths: Tuple[Tuple[str, str], ...] = field(default_factory=tuple)

    @classmethod
    def from_document(cls, domain: str, version: str, action: str, document: Any) -> "ExtractionSpec":
        """Build from a loaded YAML/JSON document, optionally nested under 'save-data'."""
        if isinstance(document, Mapping) and SAVE_DATA_KEY in document:
            document = document[SAVE_DATA_KEY]
        if document is None:
            document = {}
        if not isinstance(document, Mapping):
            raise ExtractionSpecError(
                f"Extraction spec for {domain}/{version}/{action} must be a mapping, "
                f"got {type(document).__name__}"
            )
        paths = []
        for name, expr in document.items():
            if not isinstance(name, str) or not isinstance(expr, str):
                raise ExtractionSpecError(
                    f"Extraction spec for {domain}/{version}/{action}: "
                    f"entry {name!r} must map a field name to a path string"
                )
            paths.append((name, expr))
        return cls(domain=domain, version=version, action=action, paths=tuple(paths))

    @classmethod
    def from_mapping(cls, paths: Mapping[str, str], domain: str = "", version: str = "", action: str = "") -> "ExtractionSpec":
        return cls.from_document(domain, version, action, dict(paths))

    def as_dict(self) -> Dict[str, str]:
        return dict(self.paths)

    def __len__(self):
        return len(self.paths)

# ============================================
# EXTRACTION
# ============================================

@lru_cache(maxsize=1024)
def _compile(expr: str):
    return jsonpath_parse(expr)

def extract_value(raw_message: Any, expr: str) -> Any:
    """Evaluate one path: 1 match -> value, n matches -> list, 0 -> None. May raise."""
    matches = [m.value for m in _compile(expr).find(raw_message)]
    if not matches:
        return None
    if len(matches) == 1:
        return matches[0]
    return matches

def extract(raw_message: Any, spec: ExtractionSpec) -> Dict[str, Any]:
    """Produce the snapshot for `raw_message`. Never raises."""
    snapshot: Dict[str, Any] = {}
    for name, expr in spec.paths:
        try:
            snapshot[name] = extract_value(raw_message, expr)
        except Exception as e:
            logger.warning(
                f"EXTRACT {spec.action or '?'}: field '{name}' path '{expr}' failed: {e}"
            )
            record_extraction_error(spec.action or "unknown")
            snapshot[name] = None
    return snapshot

# ============================================
# SPEC LOADER
# ============================================

def domain_key(domain: str) -> str:
    """'ONDC:FIS10' -> 'fis10'."""
    return (domain or "").split(':')[-1].strip().lower()

def path_segment(name: str, value: str) -> str:
    """A context value used as a directory or file name; never escapes base_dir."""
    if '/' in value or '\\' in value or '..' in value:
        raise ExtractionSpecError(f"Unsafe {name} for extraction spec lookup: {value!r}")
    return value

class ExtractionSpecLoader:
    """
    Loads extraction specs from <base_dir>/<domain-key>/<version>/<action>.yaml.

    Loaded specs are cached; the loader is safe to share across tasks.
    """

    def __init__(self, base_dir):
        self.base_dir = Path(base_dir)
        self._cache: Dict[Tuple[str, str, str], Optional[ExtractionSpec]] = {}
        self._lock = threading.Lock()

    def spec_path(self, domain: str, version: str, action: str) -> Path:
        return (
            self.base_dir
            / path_segment("domain", domain_key(domain))
            / path_segment("version", version)
            / f"{path_segment('action', action.lower())}.yaml"
        )

    def load(self, domain: str, version: str, action: str) -> Optional[ExtractionSpec]:
        """Return the spec, or None when no spec file exists for the key."""
        key = (domain_key(domain), version, action.lower())
        with self._lock:
            if key in self._cache:
                return self._cache[key]

        path = self.spec_path(domain, version, action)
        if not path.is_file():
            logger.info(f"No extraction spec at {path}")
            spec = None
        else:
            try:
                document = yaml.safe_load(path.read_text(encoding="utf-8"))
            except (OSError, UnicodeDecodeError, yaml.YAMLError) as e:
                raise ExtractionSpecError(f"Unreadable extraction spec {path}: {e}") from e
            spec = ExtractionSpec.from_document(domain, version, action.lower(), document)
            logger.info(f"Loaded extraction spec {path} ({len(spec)} fields)")

        with self._lock:
            self._cache[key] = spec
        return spec

    def available_actions(self, domain: str, version: str):
        folder = self.base_dir / path_segment("domain", domain_key(domain)) / path_segment("version", version)
        if not folder.is_dir():
            return []
        return sorted(p.stem for p in folder.glob("*.yaml"))
