from abc import ABC, abstractmethod
from typing import List, Optional

from data_classes import Cursor


class BaseCommitSource(ABC):
    """abstract base class for the commit sources the orchestrator traverses"""

    @abstractmethod
    def resolve_head(self, target: str) -> str:
        pass

    @abstractmethod
    def count_commits(self, target: str, head: str) -> int:
        pass

    @abstractmethod
    def fetch_commits(self, target: str, since_cursor: Optional[Cursor], limit: int) -> List[str]:
        """commit ids after the cursor position, newest first"""
        pass

    @abstractmethod
    def list_commits_since(self, target: str, old_head: str, new_head: str) -> List[str]:
        pass

    @abstractmethod
    def fetch_diff(self, target: str, commit_id: str) -> str:
        pass
