"""Environment preamble sent as the first user message of a session."""

import asyncio
import platform
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path

from turnloop.config import Config
from turnloop.llm import Part
from turnloop.logging import get_logger
from turnloop.tools.registry import ToolRegistry

log = get_logger(__name__)

MAX_ITEMS = 200
TRUNCATION_INDICATOR = "..."
DEFAULT_IGNORED_FOLDERS = frozenset({"node_modules", ".git", "dist"})
FULL_CONTEXT_TIMEOUT_SECONDS = 30.0


@dataclass
class _FolderNode:
    name: str
    path: Path
    files: list[str] = field(default_factory=list)
    sub_folders: list["_FolderNode"] = field(default_factory=list)
    ignored: bool = False
    more_files: bool = False
    more_sub_folders: bool = False


def _read_structure(root: Path, max_items: int, ignored: frozenset[str]) -> _FolderNode | None:
    """Breadth-first scan that stops adding entries once ``max_items`` is reached."""
    root_node = _FolderNode(name=root.name, path=root)
    queue: deque[_FolderNode] = deque([root_node])
    seen: set[Path] = set()
    count = 0

    while queue:
        node = queue.popleft()
        if node.path in seen or count >= max_items:
            continue
        seen.add(node.path)

        try:
            entries = sorted(node.path.iterdir(), key=lambda p: p.name)
        except FileNotFoundError:
            if node is root_node:
                return None
            continue
        except PermissionError as e:
            log.warning("Could not read directory", path=str(node.path), error=str(e))
            continue

        for entry in entries:
            if not entry.is_file():
                continue
            if count >= max_items:
                node.more_files = True
                break
            node.files.append(entry.name)
            count += 1

        for entry in entries:
            if not entry.is_dir():
                continue
            if count >= max_items:
                node.more_sub_folders = True
                break
            child = _FolderNode(name=entry.name, path=entry, ignored=entry.name in ignored)
            node.sub_folders.append(child)
            count += 1
            if not child.ignored:
                queue.append(child)

    return root_node


def _format_structure(node: _FolderNode, indent: str, is_last: bool, is_root: bool, lines: list[str]) -> None:
    if not is_root:
        connector = "└───" if is_last else "├───"
        suffix = TRUNCATION_INDICATOR if node.ignored else ""
        lines.append(f"{indent}{connector}{node.name}/{suffix}")
    child_indent = "" if is_root else indent + ("    " if is_last else "│   ")

    has_folders = bool(node.sub_folders) or node.more_sub_folders
    for index, name in enumerate(node.files):
        last = index == len(node.files) - 1 and not has_folders and not node.more_files
        lines.append(f"{child_indent}{'└───' if last else '├───'}{name}")
    if node.more_files:
        lines.append(f"{child_indent}{'├───' if has_folders else '└───'}{TRUNCATION_INDICATOR}")

    for index, child in enumerate(node.sub_folders):
        last = index == len(node.sub_folders) - 1 and not node.more_sub_folders
        _format_structure(child, child_indent, last, False, lines)
    if node.more_sub_folders:
        lines.append(f"{child_indent}└───{TRUNCATION_INDICATOR}")


def get_folder_structure(
    directory: Path | str,
    max_items: int = MAX_ITEMS,
    ignored_folders: frozenset[str] = DEFAULT_IGNORED_FOLDERS,
) -> str:
    """Render a tree of ``directory`` limited to ``max_items`` entries.

    Ignored folders are listed with a trailing ``...`` instead of their contents.
    """
    root = Path(directory).resolve()
    node = _read_structure(root, max_items, ignored_folders)
    if node is None:
        return f"Error: Could not read directory {root}"

    lines: list[str] = []
    _format_structure(node, "", True, True, lines)
    truncated = _is_truncated(node)
    header = f"Showing up to {max_items} items (files + folders)."
    if truncated:
        header += f" Folders or files indicated with {TRUNCATION_INDICATOR} contain more items not shown or were ignored."
    return f"{header}\n\n{root}/\n" + "\n".join(lines)


def _is_truncated(node: _FolderNode) -> bool:
    if node.more_files or node.more_sub_folders or node.ignored:
        return True
    return any(_is_truncated(child) for child in node.sub_folders)


async def get_environment_context(config: Config, registry: ToolRegistry) -> list[Part]:
    """Build the parts of the environment preamble.

    When ``session.full_context`` is enabled, the whole target directory is
    read through the ``read_many_files`` tool. Failures there add an error
    marker part instead of failing the session.
    """
    target_dir = config.resolved_target_dir()
    today = datetime.now().strftime("%A, %B %d, %Y")
    folder_structure = await asyncio.get_running_loop().run_in_executor(
        None, get_folder_structure, target_dir
    )
    context = (
        "Okay, just setting up the context for our chat.\n"
        f"Today is {today}.\n"
        f"My operating system is: {platform.system().lower()}\n"
        f"I'm currently working in the directory: {target_dir}\n"
        f"{folder_structure}"
    )
    parts = [Part.from_text(context)]

    if not config.session.full_context:
        return parts

    tool = registry.get_tool("read_many_files")
    if tool is None:
        log.warning("Full context requested, but read_many_files tool not found")
        return parts

    try:
        result = await asyncio.wait_for(
            tool.execute({"paths": ["**/*"], "use_default_excludes": True}, asyncio.Event()),
            timeout=FULL_CONTEXT_TIMEOUT_SECONDS,
        )
        if result.error is not None:
            raise RuntimeError(result.error.message)
        if isinstance(result.llm_content, str):
            content = result.llm_content
        else:
            content = "\n".join(part.text for part in result.llm_content if part.text)
        if content:
            parts.append(Part.from_text(f"\n--- Full File Context ---\n{content}"))
        else:
            log.warning("Full context requested, but read_many_files returned no content")
    except Exception as e:
        log.error("Error reading full file context", error=str(e))
        parts.append(Part.from_text("\n--- Error reading full file context ---"))
    return parts
