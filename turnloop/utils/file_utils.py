"""File helpers shared by the filesystem tools."""

import mimetypes
import os
from dataclasses import dataclass
from pathlib import Path

from turnloop.llm import InlineData, Part

DEFAULT_MAX_LINES_TEXT_FILE = 2000
MAX_LINE_LENGTH_TEXT_FILE = 2000
MAX_FILE_SIZE_BYTES = 20 * 1024 * 1024
SVG_MAX_SIZE_BYTES = 1024 * 1024

_BINARY_EXTENSIONS = {
    ".zip", ".tar", ".gz", ".exe", ".dll", ".so", ".class", ".jar", ".war",
    ".7z", ".doc", ".docx", ".xls", ".xlsx", ".ppt", ".pptx", ".odt", ".ods",
    ".odp", ".bin", ".dat", ".obj", ".o", ".a", ".lib", ".wasm", ".pyc", ".pyo",
}


def is_within_root(path_to_check: Path | str, root_directory: Path | str) -> bool:
    """Whether ``path_to_check`` is ``root_directory`` or lies beneath it."""
    candidate = Path(os.path.realpath(path_to_check))
    root = Path(os.path.realpath(root_directory))
    return candidate == root or root in candidate.parents


def make_relative(path: Path | str, root: Path | str) -> str:
    """Forward-slash path of ``path`` relative to ``root`` for display."""
    try:
        return Path(path).relative_to(root).as_posix() or "."
    except ValueError:
        return Path(path).as_posix()


def get_mime_type(path: Path | str) -> str | None:
    mime_type, _ = mimetypes.guess_type(str(path))
    return mime_type


def is_binary_file(path: Path | str) -> bool:
    """Sample the first 4 KiB: a NUL byte or >30% control bytes means binary."""
    try:
        with open(path, "rb") as f:
            sample = f.read(4096)
    except OSError:
        return False
    if not sample:
        return False
    if b"\x00" in sample:
        return True
    non_printable = sum(1 for byte in sample if byte < 9 or 13 < byte < 32)
    return non_printable / len(sample) > 0.3


def detect_file_type(path: Path | str) -> str:
    """Classify a file as text, svg, image, pdf, audio, video or binary."""
    ext = Path(path).suffix.lower()
    # mimetypes maps .ts to MPEG transport streams
    if ext == ".ts":
        return "text"
    if ext == ".svg":
        return "svg"

    mime_type = get_mime_type(path)
    if mime_type:
        for prefix in ("image", "audio", "video"):
            if mime_type.startswith(f"{prefix}/"):
                return prefix
        if mime_type == "application/pdf":
            return "pdf"

    if ext in _BINARY_EXTENSIONS or is_binary_file(path):
        return "binary"
    return "text"


@dataclass
class ProcessedFile:
    """Content of one file prepared for the model."""

    llm_content: str | Part
    return_display: str
    error: str | None = None
    is_truncated: bool = False
    original_line_count: int | None = None


def process_single_file_content(
    file_path: Path,
    root_directory: Path,
    offset: int | None = None,
    limit: int | None = None,
    max_bytes: int = MAX_FILE_SIZE_BYTES,
) -> ProcessedFile:
    """Read one file: text is windowed by offset/limit, media becomes inline data."""
    display_path = make_relative(file_path, root_directory)
    try:
        if not file_path.exists():
            return ProcessedFile("", "File not found.", error=f"File not found: {file_path}")
        if file_path.is_dir():
            return ProcessedFile(
                "",
                "Path is a directory.",
                error=f"Path is a directory, not a file: {file_path}",
            )

        size = file_path.stat().st_size
        if size > max_bytes:
            message = (
                f"File size exceeds the {max_bytes // (1024 * 1024)}MB limit: "
                f"{file_path} ({size / (1024 * 1024):.2f}MB)"
            )
            return ProcessedFile(message, message, error=message)

        file_type = detect_file_type(file_path)

        if file_type == "binary":
            return ProcessedFile(
                f"Cannot display content of binary file: {display_path}",
                f"Skipped binary file: {display_path}",
            )

        if file_type == "svg":
            if size > SVG_MAX_SIZE_BYTES:
                return ProcessedFile(
                    f"Cannot display content of SVG file larger than 1MB: {display_path}",
                    f"Skipped large SVG file (>1MB): {display_path}",
                )
            return ProcessedFile(
                file_path.read_text(encoding="utf-8", errors="replace"),
                f"Read SVG as text: {display_path}",
            )

        if file_type == "text":
            lines = file_path.read_text(encoding="utf-8", errors="replace").split("\n")
            total = len(lines)
            start = offset or 0
            effective_limit = DEFAULT_MAX_LINES_TEXT_FILE if limit is None else limit
            end = min(start + effective_limit, total)
            actual_start = min(start, total)

            shortened = False
            selected: list[str] = []
            for line in lines[actual_start:end]:
                if len(line) > MAX_LINE_LENGTH_TEXT_FILE:
                    shortened = True
                    line = line[:MAX_LINE_LENGTH_TEXT_FILE] + "... [truncated]"
                selected.append(line)

            range_truncated = start > 0 or end < total
            header = ""
            display = ""
            if range_truncated:
                header = (
                    f"[File content truncated: showing lines {actual_start + 1}-{end} of {total} "
                    "total lines. Use offset/limit parameters to view more.]\n"
                )
                display = f"Read lines {actual_start + 1}-{end} of {total} from {display_path}"
                if shortened:
                    display += " (some lines were shortened)"
            elif shortened:
                header = (
                    "[File content partially truncated: some lines exceeded maximum length "
                    f"of {MAX_LINE_LENGTH_TEXT_FILE} characters.]\n"
                )
                display = f"Read all {total} lines from {display_path} (some lines were shortened)"

            return ProcessedFile(
                header + "\n".join(selected),
                display,
                is_truncated=range_truncated or shortened,
                original_line_count=total,
            )

        data = file_path.read_bytes()
        return ProcessedFile(
            Part(inline_data=InlineData(
                mime_type=get_mime_type(file_path) or "application/octet-stream",
                data=data,
            )),
            f"Read {file_type} file: {display_path}",
        )
    except OSError as e:
        message = f"Error reading file {display_path}: {e}"
        return ProcessedFile(message, message, error=f"Error reading file {file_path}: {e}")
