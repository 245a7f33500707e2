from __future__ import annotations

from dataclasses import dataclass, field

HIGH_INTENT_TAGS = frozenset({"highIntent", "urgentSeller"})

_CONDITION_ALIASES = {
    "poor": "NeedsWork",
    "distressed": "NeedsWork",
    "needs work": "NeedsWork",
    "needswork": "NeedsWork",
    "fixer": "NeedsWork",
    "fair": "Fair",
    "average": "Fair",
    "good": "Good",
    "excellent": "Good",
    "great": "Good",
    "updated": "Good",
}

_CONDITION_POINTS = {"NeedsWork": 15, "Fair": 10, "Good": 0, "Unknown": -5}


@dataclass(frozen=True, slots=True)
class ScoreResult:
    score: int
    tags: list[str] = field(default_factory=list)
    condition: str = "Unknown"
    reasons: list[str] = field(default_factory=list)
    tag_reasons: list[str] = field(default_factory=list)


def normalize_condition(raw: str | None) -> str:
    if not raw:
        return "Unknown"
    cleaned = " ".join(raw.strip().lower().replace("_", " ").replace("-", " ").split())
    if cleaned in _CONDITION_ALIASES:
        return _CONDITION_ALIASES[cleaned]
    if cleaned.replace(" ", "") in _CONDITION_ALIASES:
        return _CONDITION_ALIASES[cleaned.replace(" ", "")]
    return "Unknown"


def price_per_sqft(price: float | None, sqft: float | None) -> float | None:
    if price is None or sqft is None or price <= 0 or sqft <= 0:
        return None
    return price / sqft


def compute_score_and_tags(*, price: float | None, sqft: float | None, condition: str | None) -> ScoreResult:
    """Score a scraped property from price, size and condition.

    Pure function: identical inputs always produce an identical ``ScoreResult``.
    """
    normalized = normalize_condition(condition)
    pps = price_per_sqft(price, sqft)
    score = 50
    reasons: list[str] = []

    if pps is not None:
        if pps < 100:
            score += 25
            reasons.append(f"price per sqft {pps:.0f} under 100 (+25)")
        elif pps < 150:
            score += 15
            reasons.append(f"price per sqft {pps:.0f} under 150 (+15)")
        elif pps < 200:
            score += 5
            reasons.append(f"price per sqft {pps:.0f} under 200 (+5)")
        elif pps > 300:
            score -= 10
            reasons.append(f"price per sqft {pps:.0f} over 300 (-10)")
    else:
        reasons.append("price per sqft unavailable")

    points = _CONDITION_POINTS[normalized]
    if points:
        reasons.append(f"condition {normalized} ({points:+d})")

    score += points

    if price is not None and price > 0:
        if price < 100_000:
            score += 10
            reasons.append("price under 100k (+10)")
        elif price < 200_000:
            score += 5
            reasons.append("price under 200k (+5)")
        elif price > 750_000:
            score -= 10
            reasons.append("price over 750k (-10)")

    score = max(0, min(100, score))

    tags: list[str] = []
    tag_reasons: list[str] = []
    if normalized == "NeedsWork":
        tags.append("fixer")
        tag_reasons.append("fixer: condition needs work")
    if pps is not None and pps < 120:
        tags.append("equity")
        tag_reasons.append("equity: price per sqft under 120")
    if score >= 80:
        tags.append("high-ROI")
        tag_reasons.append("high-ROI: score at least 80")
    if normalized == "NeedsWork" and pps is not None and pps < 100:
        tags.append("highIntent")
        tag_reasons.append("highIntent: distressed and price per sqft under 100")
    if price is not None and 0 < price < 200_000 and normalized != "NeedsWork":
        tags.append("rental")
        tag_reasons.append("rental: price under 200k in rentable condition")

    return ScoreResult(score=score, tags=tags, condition=normalized, reasons=reasons, tag_reasons=tag_reasons)


def should_trigger_matchmaking(score: int | None, tags: list[str], *, threshold: int = 85) -> bool:
    if score is not None and score >= threshold:
        return True
    return any(tag in HIGH_INTENT_TAGS for tag in tags)
