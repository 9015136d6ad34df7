"""Report surfaces."""

from webtop.query.report import LeaderboardReport

__all__ = ["LeaderboardReport"]
