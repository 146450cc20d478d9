"""Low-level text and filesystem helpers used by the planner, healer and tool executor.

Key functions:

* :func:`atomic_write_text`: temp-file + ``os.replace`` write.
* :func:`parse_patch_blocks`: split ``<<< old >>> new`` fix text into pairs.
* :func:`apply_patch_blocks`: exact-match replacement, all-or-nothing.
* :func:`clean_json`: strips markdown fences from LLM responses.
* :func:`safe_loads`: JSON parser with fence cleaning and UTF-8
  encoding fix-up.
* :func:`extract_json`: pulls the first JSON object/array out of prose.

Custom exceptions:

* :exc:`FileToolsError`: base class for all module errors.
* :exc:`OldCodeNotFoundError`: raised when a patch target is absent.
* :exc:`PatchFormatError`: raised when fix text holds no usable block.
"""
import os
import re
import json
import tempfile
from pathlib import Path
from typing import Any, List, Optional, Tuple, Union
from core.exceptions import TaskloopError
from core.logging_utils import log_json


class FileToolsError(TaskloopError):
    """Base exception for FileTools operations."""
    pass

class OldCodeNotFoundError(FileToolsError):
    """Exception raised when the code to replace is not found in the file."""
    pass

class PatchFormatError(FileToolsError):
    """Exception raised when a fix does not contain a well-formed patch block."""
    pass


PATCH_OPEN = "<<<"
PATCH_SEP = ">>>"
_PATCH_RE = re.compile(r"<<<([\s\S]*?)>>>([\s\S]*?)(?=<<<|\Z)")


def atomic_write_text(file_path: Union[str, Path], content: str) -> None:
    """Write *content* to *file_path* through a sibling temp file and ``os.replace``.

    Missing parent directories are created. On failure the temp file is removed
    and the original file is left untouched.

    Raises:
        FileToolsError: On any filesystem error during the write.
    """
    path = Path(file_path)
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        with tempfile.NamedTemporaryFile(mode="w", delete=False, dir=path.parent,
                                         encoding="utf-8", suffix=".tmp") as tmp_file:
            tmp_file.write(content)
        try:
            os.replace(tmp_file.name, path)
        except OSError:
            os.unlink(tmp_file.name)
            raise
    except OSError as e:
        log_json("ERROR", "atomic_write_failed", details={"file": str(path), "error": str(e)})
        raise FileToolsError(f"Failed to write '{file_path}': {e}") from e


def is_patch(fix: str) -> bool:
    return PATCH_OPEN in fix and PATCH_SEP in fix


def parse_patch_blocks(fix: str) -> List[Tuple[str, str]]:
    """Split fix text of the form ``<<< old >>> new`` into ``(old, new)`` pairs.

    Several blocks may follow one another. Surrounding whitespace of each half
    is stripped.

    Raises:
        PatchFormatError: If no block with a non-empty old half is present.
    """
    blocks = []
    for match in _PATCH_RE.finditer(fix or ""):
        old, new = match.group(1).strip(), match.group(2).strip()
        if old:
            blocks.append((old, new))
    if not blocks:
        raise PatchFormatError("fix contains no '<<< old >>> new' block")
    return blocks


def apply_patch_blocks(content: str, blocks: List[Tuple[str, str]], file_path: Optional[str] = None) -> str:
    """Return *content* with every block applied, replacing the first exact match.

    Nothing is returned unless every old half matches, so callers can write the
    result without risking a half-applied patch.

    Raises:
        OldCodeNotFoundError: If any old half is not an exact substring.
    """
    updated = content
    for old, new in blocks:
        if old not in updated:
            where = f" in '{file_path}'" if file_path else ""
            raise OldCodeNotFoundError(f"patch target not found{where}: {old[:80]!r}")
        updated = updated.replace(old, new, 1)
    return updated


def clean_json(raw: str) -> str:
    """Strip markdown code-fence wrappers from an LLM JSON response.

    LLMs frequently wrap JSON output in `` ```json … ``` `` or `` ``` … ``` ``
    fences. Returns *raw* unchanged when it is falsy.
    """
    if not raw:
        return raw
    text = re.sub(r"^\s*```[a-zA-Z]*\s*\n?", "", raw.strip())
    text = re.sub(r"\n?```\s*$", "", text)
    return text.strip()


def safe_loads(raw: str, ctx: str = "unknown") -> Any:
    """Parse *raw* as JSON with resilient pre-processing for common LLM quirks.

    1. **UTF-8 round-trip** drops hidden control characters or surrogate pairs.
    2. **Markdown fence stripping** through :func:`clean_json` on a second attempt.

    Raises:
        json.JSONDecodeError: If the string cannot be parsed even after both passes.
    """
    cleaned_for_encoding = raw.encode("utf-8", "ignore").decode("utf-8")
    try:
        return json.loads(cleaned_for_encoding)
    except json.JSONDecodeError:
        log_json("DEBUG", "safe_loads_retry_with_fence_cleaning", details={"ctx": ctx})
        return json.loads(clean_json(cleaned_for_encoding))


def extract_json(raw: str, kind: str = "object", ctx: str = "unknown") -> Any:
    """Find and parse the first JSON object (``kind="object"``) or array in *raw*.

    Model replies often wrap the payload in prose; this falls back to the
    outermost bracket span when the whole reply is not JSON.

    Raises:
        ValueError: If no parseable JSON of the requested kind is found.
    """
    if not raw or not isinstance(raw, str):
        raise ValueError("empty response")
    want = dict if kind == "object" else list
    try:
        parsed = safe_loads(raw, ctx)
        if isinstance(parsed, want):
            return parsed
    except json.JSONDecodeError:
        pass
    open_ch, close_ch = ("{", "}") if kind == "object" else ("[", "]")
    start, end = raw.find(open_ch), raw.rfind(close_ch)
    if start == -1 or end <= start:
        raise ValueError(f"no JSON {kind} found")
    try:
        parsed = json.loads(raw[start:end + 1])
    except json.JSONDecodeError as e:
        raise ValueError(f"invalid JSON {kind}: {e}") from e
    if not isinstance(parsed, want):
        raise ValueError(f"expected JSON {kind}")
    return parsed
