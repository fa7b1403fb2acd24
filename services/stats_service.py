# services/stats_service.py
"""
Statistics signals in abstracts.

`extract_stats` is a cheap regex pass used by the identity resolver when an
article is first stored. `detect_stats_with_ai` is the slower post-processing
stage the search orchestrator runs on newly added articles.
"""
import re
import logging
from typing import Dict, Any, List, Optional

from services.llm_service import generate_json_response

logger = logging.getLogger(__name__)

P_VALUE_RE = re.compile(r"\b[pP]\s*([<=>≤≥])\s*(0\.\d+|\d+\.\d+|\d+e-\d+)\b")
T_TEST_RE = re.compile(r"\bt\s*\(\s*(\d+)\s*\)\s*=\s*(-?\d+(?:\.\d+)?)")
CI_RE = re.compile(
    r"(\b(?:95%\s*CI|CI\s*95%)\b[^0-9]{0,10})(-?\d+(?:\.\d+)?)[\s–-]+(-?\d+(?:\.\d+)?)",
    re.IGNORECASE,
)
EFFECT_RE = re.compile(r"\b(OR|RR|HR)\s*(?:=|:)?\s*(-?\d+(?:\.\d+)?)")

SIGNIFICANCE_QUALITY = {"high": 3, "medium": 2, "low": 1}


def _to_float(raw: Optional[str]) -> Optional[float]:
    if not raw:
        return None
    try:
        return float(raw.replace(",", "."))
    except ValueError:
        return None


def extract_stats(text: Optional[str]) -> Dict[str, List[Dict[str, Any]]]:
    s = re.sub(r"\s+", " ", text or "")

    p_values = [
        {"raw": m.group(0), "operator": m.group(1), "value": _to_float(m.group(2))}
        for m in P_VALUE_RE.finditer(s)
    ]
    t_tests = [
        {"raw": m.group(0), "df": int(m.group(1)), "value": _to_float(m.group(2))}
        for m in T_TEST_RE.finditer(s)
    ]
    intervals = [
        {"raw": m.group(0), "level": 95, "low": _to_float(m.group(2)), "high": _to_float(m.group(3))}
        for m in CI_RE.finditer(s)
    ]
    effects = [
        {"raw": m.group(0), "type": m.group(1), "value": _to_float(m.group(2))}
        for m in EFFECT_RE.finditer(s)
    ]

    return {
        "pValues": p_values,
        "tTests": t_tests,
        "confidenceIntervals": intervals,
        "effects": effects,
    }


def has_any_stats(stats: Dict[str, List]) -> bool:
    return any(stats.get(key) for key in ("pValues", "tTests", "confidenceIntervals", "effects"))


def calculate_stats_quality(stats: Dict[str, List]) -> int:
    """
    3 = some p < 0.001, 2 = p < 0.01, 1 = p < 0.05, 0 = nothing significant.
    A reported confidence interval adds half a point, capped at 3.
    """
    quality = 0.0

    for p in stats.get("pValues", []):
        value = p.get("value")
        if value is None:
            continue
        if value < 0.001:
            quality = max(quality, 3)
        elif value < 0.01:
            quality = max(quality, 2)
        elif value < 0.05:
            quality = max(quality, 1)

    if stats.get("confidenceIntervals") and quality > 0:
        quality = min(quality + 0.5, 3)

    return int(quality)


def detect_stats_with_ai(text: str) -> Dict[str, Any]:
    """
    Asks the configured chat model to list statistics found in `text`.
    Returns {"hasStats", "stats", "summary", "quality"}.
    Raises LLMGenerationError / LLMJSONParseError on failure.
    """
    prompt = (
        "You are a scientific statistics expert. Identify ALL statistical data in the text below "
        "(p-values, confidence intervals, OR/RR/HR, sample sizes, test statistics).\n\n"
        f"TEXT:\n{text}\n\n"
        'Respond with JSON: {"hasStats": bool, "stats": [{"text": str, "type": '
        '"p-value|confidence-interval|effect-size|sample-size|test-statistic|other", '
        '"significance": "high|medium|low|not-significant"}], "summary": str}. '
        "high means p < 0.001, medium p < 0.01, low p < 0.05."
    )
    result = generate_json_response(prompt, temperature=0.1)

    found = result.get("stats") or []
    quality = 0
    for item in found:
        quality = max(quality, SIGNIFICANCE_QUALITY.get(str(item.get("significance", "")).lower(), 0))

    return {
        "hasStats": bool(result.get("hasStats")) and bool(found),
        "stats": found,
        "summary": result.get("summary"),
        "quality": quality,
    }
