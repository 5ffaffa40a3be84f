"""IP risk scoring.

Additive point table, clamped to 0-100:

    VPN or proxy      +40
    Tor               +50
    Hosting           +25
    High-risk country +15
    Unknown ISP       +10
"""

from clickguard.enrichment.models import NetworkFlags, RiskLevel


VPN_OR_PROXY_POINTS = 40
TOR_POINTS = 50
HOSTING_POINTS = 25
HIGH_RISK_COUNTRY_POINTS = 15
UNKNOWN_ISP_POINTS = 10

HIGH_RISK_COUNTRIES = frozenset({"CN", "RU", "NG", "PK"})

# (minimum score, level), checked top-down
RISK_LEVEL_THRESHOLDS = [
    (70, RiskLevel.CRITICAL),
    (50, RiskLevel.HIGH),
    (30, RiskLevel.MEDIUM),
    (10, RiskLevel.LOW),
]


def calculate_risk_score(flags: NetworkFlags, country_code: str, isp: str) -> int:
    """Compute the 0-100 risk score for an IP from its flags, country and ISP."""
    score = 0
    
    if flags.is_vpn or flags.is_proxy:
        score += VPN_OR_PROXY_POINTS
    if flags.is_tor:
        score += TOR_POINTS
    if flags.is_hosting:
        score += HOSTING_POINTS
    if country_code in HIGH_RISK_COUNTRIES:
        score += HIGH_RISK_COUNTRY_POINTS
    if not isp or isp == "Unknown":
        score += UNKNOWN_ISP_POINTS
    
    return max(0, min(score, 100))


def get_risk_level(score: int) -> RiskLevel:
    """Map a risk score to its level."""
    for minimum, level in RISK_LEVEL_THRESHOLDS:
        if score >= minimum:
            return level
    return RiskLevel.SAFE
