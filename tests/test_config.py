"""Tests for configuration management."""

import json

import pytest
import toml
import yaml

from fastapi_botguard.config import (
    BotGuardConfig,
    ConfigManager,
    ConfigSource,
    EnvironmentConfigLoader,
    FileConfigLoader,
    load_config,
)
from fastapi_botguard.errors import ConfigurationError, FailurePolicy
from fastapi_botguard.policy import SensitivityTier
from fastapi_botguard.risk import RuleId


class TestBotGuardConfig:
    """Test the configuration model."""

    def test_defaults(self):
        config = BotGuardConfig()

        assert config.rate_limit.max_requests == 100
        assert config.rate_limit.window_seconds == 60
        assert config.collector.max_events == 500
        assert config.policy.thresholds[SensitivityTier.HIGH] == 0.7
        assert config.reputation.enabled is False
        assert config.recaptcha.enabled is False
        assert config.include_decision_headers is True
        assert config.trusted_proxies is None

    def test_trusted_proxies(self):
        config = BotGuardConfig(trusted_proxies=["10.0.0.0/8", "2001:db8::1"])

        assert config.trusted_proxies == ["10.0.0.0/8", "2001:db8::1"]

    def test_invalid_trusted_proxy(self):
        with pytest.raises(ValueError):
            BotGuardConfig(trusted_proxies=["not-a-network"])


class TestFileConfigLoader:
    """Test file-based loading."""

    @pytest.mark.asyncio
    async def test_yaml(self, tmp_path):
        path = tmp_path / "botguard.yaml"
        path.write_text(yaml.safe_dump({"rate_limit": {"max_requests": 10}}))

        data = await FileConfigLoader({"path": str(path)}).load()

        assert data == {"rate_limit": {"max_requests": 10}}

    @pytest.mark.asyncio
    async def test_json(self, tmp_path):
        path = tmp_path / "botguard.json"
        path.write_text(json.dumps({"policy": {"challenge_band": 0.1}}))

        data = await FileConfigLoader({"path": str(path)}).load()

        assert data["policy"]["challenge_band"] == 0.1

    @pytest.mark.asyncio
    async def test_toml(self, tmp_path):
        path = tmp_path / "botguard.toml"
        path.write_text(toml.dumps({"collector": {"max_events": 42}}))

        data = await FileConfigLoader({"path": str(path)}).load()

        assert data["collector"]["max_events"] == 42

    @pytest.mark.asyncio
    async def test_missing_optional_file(self, tmp_path):
        loader = FileConfigLoader({"path": str(tmp_path / "absent.yaml")})
        assert await loader.load() == {}

    @pytest.mark.asyncio
    async def test_missing_required_file(self, tmp_path):
        loader = FileConfigLoader({"path": str(tmp_path / "absent.yaml"), "required": True})

        with pytest.raises(ConfigurationError):
            await loader.load()

    @pytest.mark.asyncio
    async def test_malformed_file(self, tmp_path):
        path = tmp_path / "broken.json"
        path.write_text("{not json")

        with pytest.raises(ConfigurationError):
            await FileConfigLoader({"path": str(path)}).load()

    @pytest.mark.asyncio
    async def test_non_mapping_top_level(self, tmp_path):
        path = tmp_path / "list.yaml"
        path.write_text("- a\n- b\n")

        with pytest.raises(ConfigurationError):
            await FileConfigLoader({"path": str(path)}).load()


class TestEnvironmentConfigLoader:
    """Test environment variable loading."""

    @pytest.mark.asyncio
    async def test_nested_keys_and_types(self):
        loader = EnvironmentConfigLoader({"environ": {
            "BOTGUARD_RATE_LIMIT__MAX_REQUESTS": "25",
            "BOTGUARD_POLICY__CHALLENGE_BAND": "0.15",
            "BOTGUARD_REPUTATION__ENABLED": "true",
            "BOTGUARD_REPUTATION__URL": "https://reputation.example.com",
            "UNRELATED": "ignored",
        }})

        data = await loader.load()

        assert data == {
            "rate_limit": {"max_requests": 25},
            "policy": {"challenge_band": 0.15},
            "reputation": {"enabled": True, "url": "https://reputation.example.com"},
        }

    @pytest.mark.asyncio
    async def test_comma_separated_list(self):
        loader = EnvironmentConfigLoader({"environ": {
            "BOTGUARD_RISK__BOT_USER_AGENT_PATTERNS": "curl/,wget/",
        }})

        data = await loader.load()

        assert data["risk"]["bot_user_agent_patterns"] == ["curl/", "wget/"]


class TestConfigManager:
    """Test merging and validation."""

    @pytest.mark.asyncio
    async def test_priority_and_deep_merge(self, tmp_path):
        path = tmp_path / "botguard.yaml"
        path.write_text(yaml.safe_dump({
            "rate_limit": {"max_requests": 10, "window_seconds": 30},
            "policy": {"thresholds": {"high": 0.8}},
        }))

        manager = ConfigManager()
        manager.add_source(ConfigSource.FILE, {"path": str(path)}, priority=10)
        manager.add_source(ConfigSource.ENVIRONMENT, {"environ": {
            "BOTGUARD_RATE_LIMIT__MAX_REQUESTS": "20",
        }}, priority=50)

        config = await manager.load()

        assert config.rate_limit.max_requests == 20
        assert config.rate_limit.window_seconds == 30
        assert config.policy.thresholds[SensitivityTier.HIGH] == 0.8
        assert config.policy.thresholds[SensitivityTier.LOW] == 0.3
        assert manager.config is config

    @pytest.mark.asyncio
    async def test_invalid_values(self):
        manager = ConfigManager()
        manager.add_source(ConfigSource.DICT, {"values": {"rate_limit": {"max_requests": 0}}})

        with pytest.raises(ConfigurationError):
            await manager.load()

    def test_unsupported_source(self):
        with pytest.raises(ValueError):
            ConfigManager().add_source("redis", {})


class TestLoadConfig:
    """Test the convenience loader."""

    @pytest.mark.asyncio
    async def test_overrides_win(self, tmp_path):
        path = tmp_path / "botguard.toml"
        path.write_text(toml.dumps({
            "reputation": {"failure_policy": "fail_closed"},
            "risk": {"rules": {"malicious_ip": {"weight": 0.6}}},
        }))

        config = await load_config(
            path,
            use_environment=False,
            overrides={"reputation": {"timeout_seconds": 0.5}},
        )

        assert config.reputation.failure_policy == FailurePolicy.FAIL_CLOSED
        assert config.reputation.timeout_seconds == 0.5
        assert config.risk.rules[RuleId.MALICIOUS_IP].weight == 0.6
        assert config.risk.rules[RuleId.BOT_USER_AGENT].weight == 0.3

    @pytest.mark.asyncio
    async def test_missing_file_is_an_error(self, tmp_path):
        with pytest.raises(ConfigurationError):
            await load_config(tmp_path / "absent.yaml", use_environment=False)

    @pytest.mark.asyncio
    async def test_defaults_only(self):
        config = await load_config(use_environment=False)
        assert config == BotGuardConfig()
