from __future__ import annotations

from pathlib import Path
from typing import Any

TREE_IGNORE_DIRS = {
    "node_modules",
    ".git",
    ".agent_pipeline",
    "dist",
    "build",
    "__pycache__",
    ".venv",
    "venv",
    ".next",
    "coverage",
}
TECH_STACK_MARKERS = {
    "package.json": "Node.js",
    "tsconfig.json": "TypeScript",
    "requirements.txt": "Python",
    "pyproject.toml": "Python",
    "go.mod": "Go",
    "Cargo.toml": "Rust",
    "Dockerfile": "Docker",
}


def build_file_tree(
    directory: Path,
    prefix: str = "",
    depth: int = 0,
    *,
    max_depth: int = 4,
    max_entries: int = 150,
) -> str:
    if depth > max_depth:
        return f"{prefix}... (max depth)\n"
    try:
        entries = list(directory.iterdir())
    except OSError:
        return ""
    entries.sort(key=lambda entry: (not entry.is_dir(), entry.name))

    lines: list[str] = []
    count = 0
    for entry in entries:
        if entry.name in TREE_IGNORE_DIRS or entry.name.startswith("."):
            continue
        count += 1
        if count > max_entries:
            lines.append(f"{prefix}... (truncated)\n")
            break
        if entry.is_dir():
            lines.append(f"{prefix}{entry.name}/\n")
            lines.append(
                build_file_tree(
                    entry,
                    prefix + "  ",
                    depth + 1,
                    max_depth=max_depth,
                    max_entries=max_entries,
                )
            )
        else:
            lines.append(f"{prefix}{entry.name}\n")
    return "".join(lines)


def detect_tech_stack(workspace_root: Path) -> list[str]:
    stack: list[str] = []
    for marker, tech in TECH_STACK_MARKERS.items():
        if (workspace_root / marker).exists() and tech not in stack:
            stack.append(tech)
    return stack


def project_context(workspace_root: Path) -> dict[str, Any]:
    return {
        "workspaceRoot": str(workspace_root),
        "techStack": detect_tech_stack(workspace_root),
        "fileTree": build_file_tree(workspace_root),
    }
