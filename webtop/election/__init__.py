"""Candidate selection and leaderboard election."""

from webtop.election.merger import ElectionMerger, ElectionResult
from webtop.election.selector import CandidateSelector, SelectionResult

__all__ = ["CandidateSelector", "ElectionMerger", "ElectionResult", "SelectionResult"]
