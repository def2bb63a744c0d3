from __future__ import annotations

import json
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Iterator, List, Mapping, Optional, Sequence, Tuple

import yaml
from jsonschema import Draft202012Validator

from flow_harness.errors import FlowParseError
from flow_harness.flow.model import ActionKind, Flow, FlowStep

FLOW_FILE_SUFFIXES = (".yaml", ".yml", ".json")

_SCHEMA_PATH = Path(__file__).resolve().parent / "schemas" / "flow_schema.json"


def load_schema(schema_path: Path = _SCHEMA_PATH) -> Dict[str, Any]:
    schema = json.loads(schema_path.read_text(encoding="utf-8"))
    if not isinstance(schema, dict):
        raise FlowParseError("schema must be an object", source=str(schema_path))
    return schema


def load_documents(path: Path) -> List[Any]:
    """Load every document in a YAML/JSON flow file.

    JSON files hold exactly one document; YAML files may hold a header
    document followed by the step list.
    """
    if not path.exists():
        raise FlowParseError("flow file not found", source=str(path))
    if not path.is_file():
        raise FlowParseError("not a regular file", source=str(path))

    suffix = path.suffix.lower()
    if suffix not in FLOW_FILE_SUFFIXES:
        raise FlowParseError(f"unsupported flow file extension: {suffix!r}", source=str(path))

    try:
        text = path.read_text(encoding="utf-8")
    except (OSError, UnicodeDecodeError) as e:
        raise FlowParseError(f"unreadable: {e}", source=str(path)) from e

    try:
        if suffix == ".json":
            return [json.loads(text)]
        return list(yaml.safe_load_all(text))
    except (json.JSONDecodeError, yaml.YAMLError) as e:
        raise FlowParseError(f"not valid structured data: {e}", source=str(path)) from e


def _normalize_documents(documents: Sequence[Any], *, source: Optional[str]) -> Dict[str, Any]:
    docs = list(documents)
    # A header followed by an empty `---` document is an empty step list.
    if len(docs) == 2 and docs[1] is None:
        docs[1] = []

    if len(docs) == 1:
        only = docs[0]
        if isinstance(only, dict):
            return dict(only)
        if isinstance(only, list):
            return {"steps": only}
    elif len(docs) == 2 and isinstance(docs[0], dict) and isinstance(docs[1], list):
        if "steps" in docs[0]:
            raise FlowParseError("header document must not contain 'steps'", source=source)
        return {**docs[0], "steps": docs[1]}

    raise FlowParseError(
        "expected a mapping with 'steps', or a header document followed by a list of steps",
        source=source,
    )


def _validate_against_schema(instance: Mapping[str, Any], *, source: Optional[str]) -> None:
    validator = Draft202012Validator(load_schema())
    errors = sorted(validator.iter_errors(instance), key=lambda e: list(e.path))
    if errors:
        msgs = []
        for e in errors[:20]:
            loc = "/".join([str(p) for p in e.path]) or "<root>"
            msgs.append(f"- {loc}: {e.message}")
        if len(errors) > 20:
            msgs.append(f"... ({len(errors)-20} more)")
        raise FlowParseError("schema validation failed:\n" + "\n".join(msgs), source=source)


def _parse_step(index: int, entry: Any, *, source: Optional[str]) -> FlowStep:
    if isinstance(entry, str):
        name, params = entry, None
    elif isinstance(entry, dict) and len(entry) == 1:
        name, params = next(iter(entry.items()))
    else:
        raise FlowParseError(f"step {index}: expected a string or a single-key mapping", source=source)

    kind = ActionKind.from_name(str(name))
    if kind is None:
        raise FlowParseError(f"step {index}: unknown action kind {name!r}", source=source)

    selector: Optional[str] = None
    text: Optional[str] = None
    if isinstance(params, str):
        if kind == ActionKind.INPUT_TEXT:
            text = params
        else:
            selector = params
    elif isinstance(params, dict):
        selector = params.get("selector")
        text = params.get("text")
    elif params is not None:
        raise FlowParseError(f"step {index}: invalid parameters for {name}", source=source)

    try:
        return FlowStep(kind, selector=selector, text=text)
    except ValueError as e:
        raise FlowParseError(f"step {index}: {e}", source=source) from e


def parse_flow(
    documents: Sequence[Any],
    *,
    source: Optional[Path] = None,
    default_app_id: Optional[str] = None,
) -> Flow:
    where = str(source) if source is not None else None
    data = _normalize_documents(documents, source=where)
    _validate_against_schema(data, source=where)

    app_id = data.get("appId") or default_app_id
    if not app_id:
        raise FlowParseError("missing application identifier (appId)", source=where)

    steps = tuple(_parse_step(i, entry, source=where) for i, entry in enumerate(data["steps"]))
    return Flow(app_id=str(app_id), steps=steps, name=data.get("name"), source=source)


def load_flow(path: Path, *, default_app_id: Optional[str] = None) -> Flow:
    path = Path(path)
    return parse_flow(load_documents(path), source=path, default_app_id=default_app_id)


def iter_flow_files(path: Path) -> Iterator[Path]:
    """Yield `path` itself, or the flow files of a directory sorted by name."""
    path = Path(path)
    if path.is_dir():
        for child in sorted(path.iterdir()):
            if child.is_file() and child.suffix.lower() in FLOW_FILE_SUFFIXES:
                yield child
        return
    yield path


def _encode_step(step: FlowStep) -> Any:
    if step.kind == ActionKind.LAUNCH_APP:
        return step.kind.value
    if step.kind == ActionKind.INPUT_TEXT:
        if step.selector is None:
            return {step.kind.value: step.text}
        return {step.kind.value: {"selector": step.selector, "text": step.text}}
    return {step.kind.value: step.selector}


def _dump_documents(header: Mapping[str, Any], steps: List[Any]) -> str:
    return (
        yaml.safe_dump(dict(header), sort_keys=False, allow_unicode=True)
        + "---\n"
        + yaml.safe_dump(steps, sort_keys=False, allow_unicode=True)
    )


def dump_flow(flow: Flow) -> str:
    """Serialize a Flow to the header + step-list layout accepted by `load_flow`."""
    header: Dict[str, Any] = {"appId": flow.app_id}
    if flow.name:
        header["name"] = flow.name
    return _dump_documents(header, [_encode_step(s) for s in flow.steps])


@dataclass(frozen=True)
class RenderedFlow:
    """Engine-facing flow text plus how many engine commands each step became."""

    text: str
    command_counts: Tuple[int, ...]

    @property
    def total_commands(self) -> int:
        return sum(self.command_counts)

    def step_for_command(self, command_index: int) -> int:
        seen = 0
        for step_index, count in enumerate(self.command_counts):
            seen += count
            if command_index < seen:
                return step_index
        raise IndexError(command_index)


def _engine_commands(step: FlowStep) -> List[Any]:
    if step.kind == ActionKind.INPUT_TEXT and step.selector is not None:
        # The engine's inputText types into the focused field.
        return [{ActionKind.TAP_ON.value: step.selector}, {step.kind.value: step.text}]
    return [_encode_step(step)]


def render_engine_flow(flow: Flow, *, app_id: Optional[str] = None) -> RenderedFlow:
    commands: List[Any] = []
    counts: List[int] = []
    for step in flow.steps:
        expanded = _engine_commands(step)
        commands.extend(expanded)
        counts.append(len(expanded))
    text = _dump_documents({"appId": app_id or flow.app_id}, commands)
    return RenderedFlow(text=text, command_counts=tuple(counts))
