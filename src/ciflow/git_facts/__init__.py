from __future__ import annotations

from .git import changed_paths, local_event, repo_root

__all__ = ["changed_paths", "local_event", "repo_root"]
