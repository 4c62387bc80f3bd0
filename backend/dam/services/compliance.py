"""Brand compliance scoring against a brand's ``compliance_rules``."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from dam.models.asset import Asset

DEFAULT_WEIGHTS: dict[str, float] = {"color": 0.3, "typography": 0.2, "tone": 0.3, "imagery": 0.2}

SCORED = "scored"
NOT_CONFIGURED = "not_configured"
NOT_EVALUATED = "not_evaluated"

ComponentResult = tuple[int, str, str]


@dataclass(slots=True)
class ComplianceResult:
    status: str
    overall_score: int | None = None
    scores: dict[str, int | None] = field(default_factory=dict)
    applied_weight: float | None = None
    breakdown: dict[str, Any] = field(default_factory=dict)


def _normalize_hex(value: Any) -> str:
    raw = value.get("hex") if isinstance(value, dict) else value
    cleaned = str(raw or "").replace(" ", "").strip().lower()
    if cleaned and not cleaned.startswith("#"):
        cleaned = f"#{cleaned}"
    return cleaned


def _strings(values: Any) -> list[str]:
    out: list[str] = []
    for item in values or []:
        text = item.get("name") or item.get("value") if isinstance(item, dict) else item
        if isinstance(text, str) and text.strip():
            out.append(text.strip().lower())
    return out


def _asset_colors(asset: Asset) -> list[str]:
    colors = asset.meta_flag("dominant_colors") or []
    ranked = sorted(
        (c for c in colors if _normalize_hex(c)),
        key=lambda c: float(c.get("coverage") or 0) if isinstance(c, dict) else 1.0,
        reverse=True,
    )
    return [_normalize_hex(c) for c in ranked[:5]]


def score_color(asset: Asset, rules: dict[str, Any]) -> ComponentResult:
    allowed = {_normalize_hex(c) for c in rules.get("allowed_colors") or []} - {""}
    banned = {_normalize_hex(c) for c in rules.get("banned_colors") or []} - {""}
    if not allowed and not banned:
        return 0, "No color rules configured.", NOT_CONFIGURED
    colors = _asset_colors(asset)
    if not colors:
        return 0, "No dominant color data available.", NOT_EVALUATED
    for hex_value in colors:
        if hex_value in banned:
            return 0, f"Dominant color {hex_value} is in banned colors list.", SCORED
    for hex_value in colors:
        if hex_value in allowed:
            return 100, f"Dominant color {hex_value} matches allowed palette.", SCORED
    return 0, "Dominant colors not found in allowed palette.", SCORED


def score_typography(asset: Asset, rules: dict[str, Any]) -> ComponentResult:
    fonts = _strings(rules.get("allowed_fonts"))
    if not fonts:
        return 0, "No typography rules configured.", NOT_CONFIGURED
    asset_font = str(asset.meta_flag("font") or asset.meta_flag("typography") or "").strip()
    if not asset_font:
        return 0, "No font metadata found.", NOT_EVALUATED
    lowered = asset_font.lower()
    if any(font in lowered for font in fonts):
        return 100, f'Font "{asset_font}" matches allowed fonts.', SCORED
    return 40, f'Font "{asset_font}" not found in allowed fonts list.', SCORED


def score_tone(asset: Asset, rules: dict[str, Any]) -> ComponentResult:
    tone_keywords = _strings(rules.get("tone_keywords"))
    banned_keywords = _strings(rules.get("banned_keywords"))
    if not tone_keywords and not banned_keywords:
        return 0, "No tone rules configured.", NOT_CONFIGURED
    text = " ".join(
        part for part in (asset.title, asset.meta_flag("description"), asset.meta_flag("caption")) if isinstance(part, str) and part
    ).lower()
    if not text:
        return 0, "No text content to evaluate.", NOT_EVALUATED
    score = 70
    reasons: list[str] = []
    for keyword in banned_keywords:
        if keyword in text:
            score -= 30
            reasons.append(f'Contains banned keyword: "{keyword}"')
    for keyword in tone_keywords:
        if keyword in text:
            score += 10
            reasons.append(f'Matches tone keyword: "{keyword}"')
    return min(100, max(0, score)), ". ".join(reasons) or "No tone keywords matched.", SCORED


def score_imagery(asset: Asset, rules: dict[str, Any]) -> ComponentResult:
    styles = _strings(rules.get("allowed_styles"))
    if not styles:
        return 0, "No photography rules configured.", NOT_CONFIGURED
    asset_style = str(asset.meta_flag("photography_style") or " ".join(asset.meta_flag("ai_tags") or [])).strip()
    if not asset_style:
        return 0, "No photography style metadata found.", NOT_EVALUATED
    lowered = asset_style.lower()
    if any(style in lowered for style in styles):
        return 100, f'Style "{asset_style}" matches allowed photography attributes.', SCORED
    return 50, f'Style "{asset_style}" not found in allowed photography attributes.', SCORED


def _weights(rules: dict[str, Any]) -> dict[str, float]:
    weights = dict(DEFAULT_WEIGHTS)
    overrides = rules.get("weights") or {}
    for key in weights:
        try:
            if key in overrides:
                weights[key] = max(0.0, float(overrides[key]))
        except (TypeError, ValueError):
            continue
    return weights


def score_asset(asset: Asset, rules: dict[str, Any] | None) -> ComplianceResult:
    rules = rules or {}
    weights = _weights(rules)
    components = {
        "color": score_color(asset, rules),
        "typography": score_typography(asset, rules),
        "tone": score_tone(asset, rules),
        "imagery": score_imagery(asset, rules),
    }
    breakdown: dict[str, Any] = {}
    applicable: list[tuple[int, float]] = []
    for key, (score, reason, status) in components.items():
        breakdown[key] = {"score": score, "weight": weights[key], "reason": reason, "status": status}
        if status == SCORED:
            applicable.append((score, weights[key]))

    scores = {key: (value[0] if value[2] == SCORED else None) for key, value in components.items()}
    total_weight = sum(weight for _, weight in applicable)
    if not applicable or total_weight <= 0:
        return ComplianceResult(status="not_applicable", scores=scores, breakdown=breakdown)

    weighted = sum(score * (weight / total_weight) for score, weight in applicable)
    overall = min(100, max(0, int(round(weighted))))
    return ComplianceResult(
        status="scored",
        overall_score=overall,
        scores=scores,
        applied_weight=round(total_weight, 4),
        breakdown=breakdown,
    )
