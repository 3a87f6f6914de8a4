"""Disclaimer attached to every backtest result served to clients."""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Literal

Language = Literal["ko", "en"]

DISCLAIMER_TEXTS: dict[str, dict[str, str]] = {
    "ko": {
        "title": "주의사항",
        "past_performance": "과거 성과는 미래 결과를 보장하지 않습니다.",
        "educational_purpose": "본 시뮬레이션은 교육 목적이며, 투자 권유가 아닙니다.",
        "risk_of_loss": "실제 베팅 시 손실이 발생할 수 있습니다.",
        "slippage_applied": "슬리피지가 적용된 결과입니다.",
        "helpline": "도박 문제 상담: 1336",
    },
    "en": {
        "title": "Disclaimer",
        "past_performance": "Past performance does not guarantee future results.",
        "educational_purpose": "This simulation is for educational purposes only, not investment advice.",
        "risk_of_loss": "Actual betting may result in losses.",
        "slippage_applied": "Slippage has been applied to the results.",
        "helpline": "Gambling helpline: 1336",
    },
}


@dataclass
class Disclaimer:
    title: str
    items: list[str]
    helpline: str
    language: str
    generated_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_dict(self) -> dict[str, Any]:
        return {
            "title": self.title,
            "items": self.items,
            "helpline": self.helpline,
            "language": self.language,
            "generated_at": self.generated_at.isoformat(),
        }


def build_disclaimer(slippage_applied: bool = False, language: Language = "ko") -> Disclaimer:
    """Build the disclaimer in ``language`` (unknown languages fall back to ko)."""
    texts = DISCLAIMER_TEXTS.get(language, DISCLAIMER_TEXTS["ko"])
    items = [texts["past_performance"], texts["educational_purpose"], texts["risk_of_loss"]]
    if slippage_applied:
        items.append(texts["slippage_applied"])
    return Disclaimer(
        title=texts["title"],
        items=items,
        helpline=texts["helpline"],
        language=language if language in DISCLAIMER_TEXTS else "ko",
    )
