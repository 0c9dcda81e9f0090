"""
Insight categorization.

Merged insight items are re-filed under a fixed taxonomy. The default
strategy scores keyword hits; anything implementing Categorizer can replace it.
"""

import re
from typing import Dict, List, Protocol, Tuple

DEFAULT_CATEGORY = "Key Insights"

# (title, icon, keywords) in taxonomy order; ties go to the earlier entry
TAXONOMY: List[Tuple[str, str, Tuple[str, ...]]] = [
    ("Key Insights", "💡", (
        "key", "insight", "important", "main", "core", "central", "takeaway", "lesson",
    )),
    ("Technical Details", "💻", (
        "technical", "technology", "software", "code", "system", "architecture", "data",
        "algorithm", "api", "platform", "tool", "engineering", "infrastructure",
    )),
    ("Financial Analysis", "💰", (
        "financial", "finance", "revenue", "profit", "cost", "price", "pricing", "money",
        "investment", "budget", "margin", "cash", "valuation", "funding", "income",
    )),
    ("Strategic Points", "🎯", (
        "strategy", "strategic", "goal", "plan", "vision", "direction", "objective",
        "priority", "roadmap", "positioning", "competitive", "long-term",
    )),
    ("Challenges & Solutions", "🧩", (
        "challenge", "problem", "issue", "solution", "solve", "obstacle", "difficulty",
        "fix", "overcome", "struggle", "barrier",
    )),
    ("Best Practices", "✅", (
        "best practice", "practice", "should", "recommend", "guideline", "approach",
        "method", "process", "habit", "framework", "standard",
    )),
    ("Market Insights", "📈", (
        "market", "customer", "industry", "trend", "demand", "competition", "competitor",
        "consumer", "audience", "growth", "sector", "segment",
    )),
    ("Expert Tips", "🎓", (
        "tip", "advice", "expert", "trick", "secret", "hack", "suggestion", "pro tip",
    )),
    ("Innovation Ideas", "🚀", (
        "innovation", "innovative", "idea", "new", "future", "create", "disrupt",
        "experiment", "opportunity", "invent", "emerging",
    )),
    ("Risk Factors", "⚠️", (
        "risk", "danger", "threat", "warning", "caution", "uncertainty", "downside",
        "failure", "mistake", "avoid", "pitfall", "volatility",
    )),
]

CATEGORY_ICONS: Dict[str, str] = {title: icon for title, icon, _ in TAXONOMY}


class Categorizer(Protocol):
    def categorize(self, text: str) -> str:
        """Return the taxonomy title the item belongs to"""
        ...


class KeywordCategorizer:
    """Assign each item to the category whose keywords match it most often"""

    def __init__(self, taxonomy: List[Tuple[str, str, Tuple[str, ...]]] = TAXONOMY,
                 default: str = DEFAULT_CATEGORY):
        self.default = default
        self._patterns = [
            (title, [re.compile(r'\b' + re.escape(keyword)) for keyword in keywords])
            for title, _, keywords in taxonomy
        ]

    def score(self, text: str) -> Dict[str, int]:
        lowered = text.lower()
        return {
            title: sum(len(pattern.findall(lowered)) for pattern in patterns)
            for title, patterns in self._patterns
        }

    def categorize(self, text: str) -> str:
        best_title = self.default
        best_score = 0
        for title, score in self.score(text).items():
            # strict comparison keeps the first category on ties
            if score > best_score:
                best_title, best_score = title, score
        return best_title
