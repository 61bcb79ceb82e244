"""Specialization tracking — task categories and learned strengths."""

from __future__ import annotations

from typing import Mapping

from evoteam.types import Task

GENERAL = "General"

CATEGORY_KEYWORDS: dict[str, tuple[str, ...]] = {
    "Frontend": ("ui", "css", "html", "react", "component", "style", "frontend", "page", "view"),
    "Backend": ("api", "database", "db", "server", "service", "backend", "route", "controller"),
    "DevOps": ("deploy", "docker", "ci/cd", "pipeline", "aws", "cloud", "infrastructure", "config"),
    "Testing": ("test", "spec", "e2e", "unit", "verify", "validation"),
    "Architecture": ("design", "plan", "structure", "system", "diagram", "adr"),
}

SUCCESS_GAIN = 0.05
FAILURE_LOSS = 0.02


class SpecializationTracker:
    """Categorizes tasks and reinforces the categories an agent succeeds in."""

    def __init__(self, keywords: Mapping[str, tuple[str, ...]] | None = None) -> None:
        self.keywords = dict(keywords or CATEGORY_KEYWORDS)

    def categorize(self, task: Task) -> str:
        text = f"{task.title} {task.description}".lower()
        for category, words in self.keywords.items():
            if any(w in text for w in words):
                return category
        return GENERAL

    def update(
        self,
        current: Mapping[str, float],
        category: str,
        success: bool,
        complexity: float = 0.5,
    ) -> dict[str, float]:
        """Return a new map with `category` reinforced or weakened."""
        scores = dict(current)
        value = scores.get(category, 0.0)
        if success:
            value = min(1.0, value + SUCCESS_GAIN * (1.0 + complexity))
        else:
            value = max(0.0, value - FAILURE_LOSS)
        scores[category] = value
        return scores

    @staticmethod
    def primary(scores: Mapping[str, float]) -> str:
        """Highest-scoring category; the first one wins ties."""
        best, best_score = GENERAL, -1.0
        for category, score in scores.items():
            if score > best_score:
                best, best_score = category, score
        return best
