"""Tests for the result disclaimer."""

from race_backtest.backtest.disclaimer import DISCLAIMER_TEXTS, build_disclaimer


class TestBuildDisclaimer:
    def test_korean_default(self):
        disclaimer = build_disclaimer()
        assert disclaimer.language == "ko"
        assert disclaimer.title == DISCLAIMER_TEXTS["ko"]["title"]
        assert len(disclaimer.items) == 3

    def test_slippage_notice(self):
        disclaimer = build_disclaimer(slippage_applied=True, language="en")
        assert disclaimer.items[-1] == DISCLAIMER_TEXTS["en"]["slippage_applied"]
        assert disclaimer.helpline == "Gambling helpline: 1336"

    def test_unknown_language_falls_back(self):
        disclaimer = build_disclaimer(language="fr")
        assert disclaimer.language == "ko"

    def test_to_dict(self):
        data = build_disclaimer(language="en").to_dict()
        assert set(data) == {"title", "items", "helpline", "language", "generated_at"}
        assert data["generated_at"].endswith("+00:00")
