from __future__ import annotations

from dataclasses import dataclass
from typing import Callable


MIN_RISK_SCORE = 0
MAX_RISK_SCORE = 100

HIGH_FREQUENCY_THRESHOLD = 50
SHORT_USER_AGENT_LENGTH = 10
RAPID_REQUEST_INTERVAL_MS = 100

_AUTOMATION_AGENT_MARKERS = ("bot", "crawler", "scraper", "automated")
_HEADLESS_AGENT_MARKERS = ("HeadlessChrome", "PhantomJS")
_SENSITIVE_PATH_MARKERS = ("/admin", "/api/roles")

INDICATOR_SHORT_USER_AGENT = "short_user_agent"
INDICATOR_HEADLESS_BROWSER = "headless_browser"
INDICATOR_RAPID_REQUESTS = "rapid_requests"

ANOMALY_INDICATORS: frozenset[str] = frozenset(
    {INDICATOR_SHORT_USER_AGENT, INDICATOR_HEADLESS_BROWSER, INDICATOR_RAPID_REQUESTS}
)


@dataclass(frozen=True)
class RiskSignals:
    # Inputs gathered by the rate limiter at decision time.
    user_agent: str
    path: str
    request_count: int
    authenticated: bool
    now_ms: int
    previous_access_ms: int | None = None


RiskRule = Callable[[RiskSignals], int]


def high_frequency(signals: RiskSignals) -> int:
    return 30 if signals.request_count > HIGH_FREQUENCY_THRESHOLD else 0


def automation_user_agent(signals: RiskSignals) -> int:
    lowered = signals.user_agent.lower()
    return 40 if any(marker in lowered for marker in _AUTOMATION_AGENT_MARKERS) else 0


def sensitive_path(signals: RiskSignals) -> int:
    return 20 if any(marker in signals.path for marker in _SENSITIVE_PATH_MARKERS) else 0


def anonymous_caller(signals: RiskSignals) -> int:
    return 0 if signals.authenticated else 10


# Order is stable so per-rule breakdowns line up across audit records.
RISK_RULES: tuple[tuple[str, RiskRule], ...] = (
    ("high_frequency", high_frequency),
    ("automation_user_agent", automation_user_agent),
    ("sensitive_path", sensitive_path),
    ("anonymous", anonymous_caller),
)


def score_breakdown(signals: RiskSignals) -> dict[str, int]:
    return {name: rule(signals) for name, rule in RISK_RULES}


def calculate_risk_score(signals: RiskSignals, rules: tuple[tuple[str, RiskRule], ...] = RISK_RULES) -> int:
    # Sum independent rule points and clamp into the published range.
    total = sum(rule(signals) for _name, rule in rules)
    return max(MIN_RISK_SCORE, min(MAX_RISK_SCORE, total))


def anomaly_indicators(signals: RiskSignals) -> list[str]:
    indicators: list[str] = []
    if len(signals.user_agent) < SHORT_USER_AGENT_LENGTH:
        indicators.append(INDICATOR_SHORT_USER_AGENT)
    if any(marker in signals.user_agent for marker in _HEADLESS_AGENT_MARKERS):
        indicators.append(INDICATOR_HEADLESS_BROWSER)
    if (
        signals.previous_access_ms is not None
        and signals.now_ms - signals.previous_access_ms < RAPID_REQUEST_INTERVAL_MS
    ):
        indicators.append(INDICATOR_RAPID_REQUESTS)
    return indicators
