from __future__ import annotations

from typing import List, Optional


class DashboardState:
    """What the terminal view has selected, plus its notice log."""

    def __init__(self):
        self.box_id: Optional[str] = None
        self.viewer_id: Optional[str] = None
        self.notices: List[str] = []

    def add_notice(self, line: str, max_lines: int = 200):
        self.notices.append(line)
        if len(self.notices) > max_lines:
            self.notices.pop(0)
