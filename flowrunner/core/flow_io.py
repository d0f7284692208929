"""Reading and writing persisted flows (JSON or YAML)."""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any, Literal

import yaml
from pydantic import ValidationError

from flowrunner.core.exceptions import FlowFileError
from flowrunner.core.flow_schema import SpecFlow

logger = logging.getLogger(__name__)

FlowFormat = Literal["json", "yaml"]
FLOW_SUFFIXES = (".json", ".yaml", ".yml")


def detect_format(path: Path) -> FlowFormat:
    return "yaml" if path.suffix.lower() in (".yaml", ".yml") else "json"


def parse_flow(document: Any, source: str = "<flow>") -> SpecFlow:
    """Validate a decoded document as a SpecFlow.

    Raises:
        FlowFileError: If the document does not have the flow shape
    """
    if not isinstance(document, dict):
        raise FlowFileError(f"{source}: flow must be a mapping with 'nodes' and 'edges'")
    try:
        return SpecFlow.model_validate(document)
    except ValidationError as e:
        raise FlowFileError(f"{source}: invalid flow structure:\n{e}") from e


def loads_flow(text: str, fmt: FlowFormat = "json", source: str = "<flow>") -> SpecFlow:
    try:
        document = yaml.safe_load(text) if fmt == "yaml" else json.loads(text)
    except (yaml.YAMLError, json.JSONDecodeError) as e:
        raise FlowFileError(f"{source}: cannot decode {fmt}: {e}") from e
    return parse_flow(document, source)


def load_flow(path: Path | str) -> SpecFlow:
    """Load a flow file; the format follows the file extension.

    Raises:
        FlowFileError: If the file is missing, undecodable, or malformed
    """
    path = Path(path)
    try:
        text = path.read_text(encoding="utf-8")
    except OSError as e:
        raise FlowFileError(f"Cannot read flow file {path}: {e}") from e
    flow = loads_flow(text, detect_format(path), source=str(path))
    logger.debug(f"Loaded flow {path}: {len(flow.nodes)} nodes, {len(flow.edges)} edges")
    return flow


def dump_flow(flow: SpecFlow, fmt: FlowFormat = "json") -> str:
    document = flow.to_document()
    if fmt == "yaml":
        return yaml.safe_dump(document, sort_keys=False, allow_unicode=True)
    return json.dumps(document, indent=2, ensure_ascii=False) + "\n"


def save_flow(flow: SpecFlow, path: Path | str, fmt: FlowFormat | None = None) -> Path:
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(dump_flow(flow, fmt or detect_format(path)), encoding="utf-8")
    return path


def find_flow(reference: str, base_dir: Path | str | None = None) -> Path:
    """Locate a flow file by path or by id.

    An id is a file name without extension; ``.json``, ``.yaml`` and
    ``.yml`` are tried in that order. Relative references resolve against
    ``base_dir`` (default: the working directory).

    Raises:
        FlowFileError: If no matching file exists
    """
    base = Path(base_dir) if base_dir is not None else Path.cwd()
    path = Path(reference).expanduser()
    if not path.is_absolute():
        path = base / path
    candidates = [path]
    if path.suffix.lower() not in FLOW_SUFFIXES:
        candidates += [path.with_name(path.name + suffix) for suffix in FLOW_SUFFIXES]
    for candidate in candidates:
        if candidate.is_file():
            return candidate
    raise FlowFileError(f"Flow '{reference}' not found in {base}")
