"""Artifact extraction from accumulated agent output.

Extraction is stateless: given an agent's (metadata-stripped) output it
returns every artifact it can find, with deterministic titles. Callers
merge the result into the mission's artifact set with
``merge_artifacts``, which deduplicates by a lower-cased (title, type)
signature so re-scanning the same buffer never adds duplicates.
"""

import re

import structlog

from mission.classifier import COMPLETION_MARKERS, WAITING_MARKERS
from models.schemas import Artifact, ArtifactType

logger = structlog.get_logger(__name__)

MIN_FENCED_LENGTH = 10
MIN_TABLE_ROWS = 3
MIN_LIST_ITEMS = 3

_FENCE_RE = re.compile(r"^```([^\n`]*)\n(.*?)^```[ \t]*$", re.MULTILINE | re.DOTALL)
_FILENAME_ATTR_RE = re.compile(r"""(?:filename|file|title)\s*=\s*["']?([^\s"']+)""", re.IGNORECASE)
_FILENAME_COMMENT_RE = re.compile(
    r"^\s*(?:#|//|<!--|/\*)\s*(?:filename|file)\s*:\s*([^\s*>-]+)",
    re.IGNORECASE,
)
_URL_RE = re.compile(r"https?://[^\s<>()\[\]\"'`]+")
_TOOL_LINE_RE = re.compile(r"^[A-Za-z_][\w.-]*\(\)$")
_NUMBERED_RE = re.compile(r"^\s*\d+[.)]\s+(.+)$")
_COMMAND_RE = re.compile(
    r"^\s*(?:\$\s*)?"
    r"(?:(?:pip3?|npm|yarn|pnpm|brew|apt(?:-get)?|cargo|docker|npx|uvicorn|python3?\s+-m)\s+\S"
    r"|go\s+(?:get|install|run|build|mod|test)\b).*$"
)
_HEADING_RE = re.compile(r"^\s*(#{1,6})\s+(.+?)\s*#*\s*$|^\s*\*\*(.+?)\*\*:?\s*$")
_SECTION_NAMES = ("quick reference", "commands", "quick start")

_EXTENSION_TYPES = {
    ".html": ArtifactType.HTML,
    ".htm": ArtifactType.HTML,
    ".md": ArtifactType.MARKDOWN,
    ".markdown": ArtifactType.MARKDOWN,
    ".txt": ArtifactType.TEXT,
}
_LANGUAGE_TYPES = {
    "html": ArtifactType.HTML,
    "md": ArtifactType.MARKDOWN,
    "markdown": ArtifactType.MARKDOWN,
    "text": ArtifactType.TEXT,
    "txt": ArtifactType.TEXT,
    "plaintext": ArtifactType.TEXT,
}

_MARKER_LINES = {marker.upper() for marker in (*COMPLETION_MARKERS, *WAITING_MARKERS)}


def strip_metadata_lines(text: str) -> str:
    """Remove synthetic tool lines, bare status markers and system directives."""
    kept: list[str] = []
    for line in text.splitlines():
        stripped = line.strip()
        if _TOOL_LINE_RE.match(stripped):
            continue
        if stripped.upper() in _MARKER_LINES:
            continue
        if stripped.startswith("[System Directive]"):
            continue
        kept.append(line)
    return "\n".join(kept)


def artifact_signature(artifact: Artifact) -> tuple[str, str]:
    return artifact.title.strip().lower(), artifact.type.value


def merge_artifacts(existing: list[Artifact], found: list[Artifact]) -> list[Artifact]:
    """Append artifacts whose signature is not yet present.

    Args:
        existing: The mission's artifact list. Mutated in place.
        found: Freshly extracted artifacts.

    Returns:
        The artifacts that were actually added.
    """
    seen = {artifact_signature(a) for a in existing}
    added: list[Artifact] = []
    for artifact in found:
        signature = artifact_signature(artifact)
        if signature in seen:
            continue
        seen.add(signature)
        existing.append(artifact)
        added.append(artifact)
    return added


# ---------------------------------------------------------------------------
# Individual extractors
# ---------------------------------------------------------------------------


def _fenced_filename(info: str, body: str) -> str | None:
    match = _FILENAME_ATTR_RE.search(info)
    if match:
        return match.group(1)
    tokens = info.split()
    if tokens and ":" in tokens[0]:
        _, _, path = tokens[0].partition(":")
        if "." in path:
            return path
    for token in tokens[1:]:
        if "." in token and not token.startswith("."):
            return token
    first_line = body.splitlines()[0] if body else ""
    match = _FILENAME_COMMENT_RE.match(first_line)
    if match:
        return match.group(1)
    return None


def _type_for(filename: str | None, language: str) -> ArtifactType:
    if filename:
        lowered = filename.lower()
        for extension, artifact_type in _EXTENSION_TYPES.items():
            if lowered.endswith(extension):
                return artifact_type
    return _LANGUAGE_TYPES.get(language.lower(), ArtifactType.CODE)


def _first_meaningful_line(body: str) -> str:
    for line in body.splitlines():
        stripped = line.strip().lstrip("#/<!-* ").strip()
        if stripped:
            return stripped[:40]
    return ""


def _extract_fenced(
    agent_id: str,
    agent_name: str,
    text: str,
    named_only: bool,
) -> list[Artifact]:
    artifacts: list[Artifact] = []
    for match in _FENCE_RE.finditer(text):
        info, body = match.group(1).strip(), match.group(2)
        language = info.split()[0].split(":")[0] if info else ""
        filename = _fenced_filename(info, body)
        if filename:
            artifacts.append(
                Artifact(
                    agent_id=agent_id,
                    agent_name=agent_name,
                    type=_type_for(filename, language),
                    title=filename,
                    content=body.rstrip("\n"),
                )
            )
            continue
        if named_only or len(body.strip()) < MIN_FENCED_LENGTH:
            continue
        label = language or "code"
        artifacts.append(
            Artifact(
                agent_id=agent_id,
                agent_name=agent_name,
                type=_type_for(None, language),
                title=f"{label} snippet: {_first_meaningful_line(body)}",
                content=body.rstrip("\n"),
            )
        )
    return artifacts


def _extract_urls(agent_id: str, agent_name: str, text: str) -> list[Artifact]:
    artifacts: list[Artifact] = []
    seen: set[str] = set()
    for match in _URL_RE.finditer(text):
        url = match.group(0).rstrip(".,;:!?")
        if url in seen:
            continue
        seen.add(url)
        artifacts.append(
            Artifact(
                agent_id=agent_id,
                agent_name=agent_name,
                type=ArtifactType.TEXT,
                title=url,
                content=url,
            )
        )
    return artifacts


def _contiguous_blocks(lines: list[str], predicate) -> list[list[str]]:
    blocks: list[list[str]] = []
    current: list[str] = []
    for line in lines:
        if predicate(line):
            current.append(line)
            continue
        if current:
            blocks.append(current)
            current = []
    if current:
        blocks.append(current)
    return blocks


def _extract_tables(agent_id: str, agent_name: str, lines: list[str]) -> list[Artifact]:
    artifacts: list[Artifact] = []
    for block in _contiguous_blocks(lines, lambda line: line.strip().startswith("|")):
        if len(block) < MIN_TABLE_ROWS:
            continue
        header = [cell.strip() for cell in block[0].strip().strip("|").split("|") if cell.strip()]
        artifacts.append(
            Artifact(
                agent_id=agent_id,
                agent_name=agent_name,
                type=ArtifactType.MARKDOWN,
                title=f"Table: {', '.join(header)[:60]}",
                content="\n".join(block),
            )
        )
    return artifacts


def _extract_numbered_lists(agent_id: str, agent_name: str, lines: list[str]) -> list[Artifact]:
    artifacts: list[Artifact] = []
    for block in _contiguous_blocks(lines, lambda line: bool(_NUMBERED_RE.match(line))):
        if len(block) < MIN_LIST_ITEMS:
            continue
        first = _NUMBERED_RE.match(block[0])
        first_item = first.group(1).strip() if first else ""
        artifacts.append(
            Artifact(
                agent_id=agent_id,
                agent_name=agent_name,
                type=ArtifactType.MARKDOWN,
                title=f"List: {first_item[:50]}",
                content="\n".join(block),
            )
        )
    return artifacts


def _extract_commands(agent_id: str, agent_name: str, text: str) -> list[Artifact]:
    commands: list[str] = []
    for line in text.splitlines():
        if _COMMAND_RE.match(line):
            command = line.strip().removeprefix("$").strip()
            if command not in commands:
                commands.append(command)
    if not commands:
        return []
    return [
        Artifact(
            agent_id=agent_id,
            agent_name=agent_name,
            type=ArtifactType.CODE,
            title=f"Commands from {agent_name}",
            content="\n".join(commands),
        )
    ]


def _heading(line: str) -> tuple[int, str] | None:
    match = _HEADING_RE.match(line)
    if not match:
        return None
    if match.group(1):
        return len(match.group(1)), match.group(2).strip()
    return 7, match.group(3).strip()


def _extract_named_sections(agent_id: str, agent_name: str, lines: list[str]) -> list[Artifact]:
    artifacts: list[Artifact] = []
    index = 0
    while index < len(lines):
        heading = _heading(lines[index])
        if heading is None or not any(name in heading[1].lower() for name in _SECTION_NAMES):
            index += 1
            continue
        level, title = heading
        body: list[str] = []
        cursor = index + 1
        while cursor < len(lines):
            nested = _heading(lines[cursor])
            if nested is not None and nested[0] <= level:
                break
            body.append(lines[cursor])
            cursor += 1
        content = "\n".join(body).strip()
        if content:
            artifacts.append(
                Artifact(
                    agent_id=agent_id,
                    agent_name=agent_name,
                    type=ArtifactType.MARKDOWN,
                    title=title,
                    content=content,
                )
            )
        index = cursor
    return artifacts


def extract_artifacts(
    agent_id: str,
    agent_name: str,
    text: str,
    named_only: bool = False,
) -> list[Artifact]:
    """Extract every artifact found in an agent's output.

    Args:
        agent_id: The agent that produced the output.
        agent_name: Display name used in titles.
        text: Accumulated output; metadata lines are stripped first.
        named_only: Only return fenced blocks that carry an explicit
            filename (the authoritative report path).

    Returns:
        Artifacts in discovery order. Titles are deterministic for a
        given input, so repeated scans produce equal signatures.
    """
    cleaned = strip_metadata_lines(text)
    artifacts = _extract_fenced(agent_id, agent_name, cleaned, named_only)
    if named_only:
        return artifacts

    # Tables, lists and sections inside fences are already covered.
    prose = _FENCE_RE.sub("", cleaned)
    prose_lines = prose.splitlines()
    artifacts.extend(_extract_urls(agent_id, agent_name, prose))
    artifacts.extend(_extract_tables(agent_id, agent_name, prose_lines))
    artifacts.extend(_extract_numbered_lists(agent_id, agent_name, prose_lines))
    artifacts.extend(_extract_commands(agent_id, agent_name, cleaned))
    artifacts.extend(_extract_named_sections(agent_id, agent_name, prose_lines))

    if artifacts:
        logger.debug(
            "artifacts_extracted",
            agent_id=agent_id,
            count=len(artifacts),
        )
    return artifacts
