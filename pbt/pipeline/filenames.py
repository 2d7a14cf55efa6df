import re
import uuid
from pathlib import PurePath
from typing import Callable, Optional

MAX_NAME_LENGTH = 255
FALLBACK_BASE = "image"

_UNSAFE = re.compile(r'[<>:"/\\|?*\x00-\x1f\s]')
_REPEATS = re.compile(r"_{2,}")


def sanitize_base(base: str) -> str:
    base = _UNSAFE.sub("_", base)
    base = _REPEATS.sub("_", base)
    return base.strip("_")


def generate_safe_filename(
    original_name: str,
    max_length: int = MAX_NAME_LENGTH,
    reserve: int = 0,
    id_factory: Optional[Callable[[], str]] = None,
) -> str:
    """Returns `<uuid>_<sanitized base><ext>` no longer than max_length characters.

    `reserve` is the length of the longest suffix that will later replace the
    extension (e.g. `_processed.jpg`); derived names stay within max_length too.
    """
    unique_id = id_factory() if id_factory else str(uuid.uuid4())
    name = PurePath(original_name).name
    ext = PurePath(name).suffix
    # Extensions are expected to be short; a pathological one is folded into the base
    if len(ext) > 16 or _UNSAFE.search(ext):
        ext = ""
    base = name[: len(name) - len(ext)] if ext else name

    safe = sanitize_base(base) or FALLBACK_BASE
    budget = max_length - len(unique_id) - 1 - max(len(ext), reserve)
    if budget < len(FALLBACK_BASE):
        raise ValueError(f"Identifier and extension leave no room for a name: {original_name!r}")
    if len(safe) > budget:
        safe = safe[:budget].rstrip("_") or FALLBACK_BASE

    return f"{unique_id}_{safe}{ext}"
