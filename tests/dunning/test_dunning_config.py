"""Tests for DunningConfig built from application settings."""

from agents.dunning.config import DunningConfig
from backend.core.config import Settings


class TestDunningConfig:
    """Test settings mapping and channel readiness helpers."""

    def test_from_settings_maps_channels_and_limits(self, test_settings):
        config = DunningConfig.from_settings(test_settings)

        assert config.company_name == "Nexius"
        assert config.default_currency == "PEN"
        assert config.chat_base_url == "https://chat.example.test"
        assert config.inbox_id == 3
        assert config.email_api_key == "brevo-test-key"
        assert config.overdue_default_limit == 100
        assert config.missing_chat_settings() == []
        assert config.missing_email_settings() == []

    def test_missing_settings_are_named(self):
        config = DunningConfig.from_settings(
            Settings(CHATWOOT_BASE_URL="https://chat.example.test", CHATWOOT_INBOX_ID="x")
        )

        assert config.missing_chat_settings() == ["CHATWOOT_API_TOKEN", "CHATWOOT_ACCOUNT_ID"]
        assert config.missing_email_settings() == ["BREVO_API_KEY"]
        assert config.inbox_id is None
