"""Shared utility functions for bugsquad core modules."""

from pathlib import Path


def resolve_in_root(file_path: str, root: Path) -> Path:
    """Resolve a (relative or absolute) path and require it to stay under root.

    Tool calls name files relative to the investigator's worktree:
    ./a.py, a.py and /full/path/to/worktree/a.py all resolve to the same file.

    Raises:
        ValueError: If the path resolves outside root
    """
    path = Path(file_path)
    resolved_root = root.resolve()

    resolved = path.resolve() if path.is_absolute() else (resolved_root / path).resolve()

    try:
        resolved.relative_to(resolved_root)
    except ValueError:
        raise ValueError(
            f"Path '{file_path}' resolves outside the workspace root '{resolved_root}'."
        )
    return resolved


def truncate_output(output: str, max_length: int = 2000) -> str:
    """Truncate output preserving both head and tail.

    Tool output often has the interesting part at the END (test summaries,
    stack traces), so capturing only the head loses critical information.

    Returns: First ~40% + "..." + Last ~60% if truncation needed.
    """
    if len(output) <= max_length:
        return output

    if max_length < 60:
        if max_length <= 3:
            return output[:max_length]
        return output[: max_length - 3] + "..."

    truncated_chars = len(output) - max_length
    separator = f"\n\n... [{truncated_chars} chars truncated] ...\n\n"

    available = max_length - len(separator)
    if available < 20:
        return output[: max_length - 3] + "..."

    head_size = int(available * 0.4)
    tail_size = available - head_size
    return f"{output[:head_size]}{separator}{output[-tail_size:]}"
