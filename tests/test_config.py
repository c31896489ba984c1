import json
import os
import tempfile
import unittest
from pathlib import Path

import pytest

from deploy_agent.config import DEFAULT_PIPELINE, AppConfig, load_config
from deploy_agent.errors import ConfigurationError
from deploy_agent.steps import ACTIVATE, BUILD, build_pipeline, split_phases
from deploy_agent.targets import Target, TargetRegistry


def _write_config(directory: str, payload: dict) -> str:
    path = Path(directory) / "deploy_agent.json"
    path.write_text(json.dumps(payload), encoding="utf-8")
    return str(path)


BASE_CONFIG = {
    "repo_url": "git@github.com:org/site.git",
    "transport": {"connect_timeout": 5, "attempts": 2},
    "release": {"keep_releases": 3},
    "targets": {
        "web1": {
            "host": "web1.example.com",
            "username": "deploy",
            "credential": {"kind": "key", "key_path": "~/.ssh/id_ed25519"},
            "deploy_root": "/var/www/site/",
            "groups": ["production"],
        },
        "web2": {
            "host": "web2.example.com",
            "username": "deploy",
            "deploy_root": "/var/www/site",
            "groups": ["production"],
        },
        "stage": {
            "_comment": "staging box",
            "host": "stage.example.com",
            "username": "deploy",
            "deploy_root": "/srv/site",
            "groups": ["staging"],
        },
    },
    "branches": {"main": "production"},
    "default_targets": "staging",
}


class ConfigTests(unittest.TestCase):
    def test_loads_custom_config(self) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            config = load_config(_write_config(tmp, BASE_CONFIG))
        self.assertIsInstance(config, AppConfig)
        self.assertEqual(config.transport.connect_timeout, 5)
        self.assertEqual(config.transport.attempts, 2)
        # untouched defaults survive partial sections
        self.assertEqual(config.transport.command_timeout, 300.0)
        self.assertEqual(config.release.keep_releases, 3)
        self.assertEqual(config.release.lock_timeout, 0.0)
        self.assertEqual(config.targets.names(), ["web1", "web2", "stage"])
        self.assertEqual(config.targets.get("web1").deploy_root, "/var/www/site")
        self.assertEqual(config.pipeline, DEFAULT_PIPELINE)

    def test_env_vars_override_file(self) -> None:
        overrides = {
            "DEPLOY_AGENT_REPO_URL": "https://example.com/other.git",
            "DEPLOY_AGENT_WEBHOOK_URL": "https://ci.example.com/hook",
            "DEPLOY_AGENT_CONNECT_TIMEOUT": "2.5",
        }
        original = {key: os.environ.get(key) for key in overrides}
        os.environ.update(overrides)
        try:
            with tempfile.TemporaryDirectory() as tmp:
                config = load_config(_write_config(tmp, BASE_CONFIG))
            self.assertEqual(config.repo_url, "https://example.com/other.git")
            self.assertEqual(config.reporting.webhook_url, "https://ci.example.com/hook")
            self.assertEqual(config.transport.connect_timeout, 2.5)
        finally:
            for key, value in original.items():
                if value is None:
                    os.environ.pop(key, None)
                else:
                    os.environ[key] = value

    def test_default_key_path_env_applies_to_targets_without_credential(self) -> None:
        original = os.environ.get("DEPLOY_AGENT_SSH_KEY_PATH")
        os.environ["DEPLOY_AGENT_SSH_KEY_PATH"] = "~/.ssh/ci_key"
        try:
            with tempfile.TemporaryDirectory() as tmp:
                config = load_config(_write_config(tmp, BASE_CONFIG))
            self.assertEqual(config.targets.get("web2").credential.key_path, "~/.ssh/ci_key")
            self.assertEqual(config.targets.get("web1").credential.key_path, "~/.ssh/id_ed25519")
        finally:
            if original is None:
                os.environ.pop("DEPLOY_AGENT_SSH_KEY_PATH", None)
            else:
                os.environ["DEPLOY_AGENT_SSH_KEY_PATH"] = original

    def test_invalid_json_is_a_configuration_error(self) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            path = Path(tmp) / "broken.json"
            path.write_text("{not json", encoding="utf-8")
            with self.assertRaises(ConfigurationError):
                load_config(str(path))

    def test_password_targets_are_rejected(self) -> None:
        payload = json.loads(json.dumps(BASE_CONFIG))
        payload["targets"]["web1"]["password"] = "hunter2"
        with self.assertRaises(ConfigurationError):
            AppConfig.from_dict(payload)

    def test_unknown_section_key_is_rejected(self) -> None:
        payload = dict(BASE_CONFIG, transport={"conect_timeout": 1})
        with self.assertRaises(ConfigurationError):
            AppConfig.from_dict(payload)

    def test_selector_for_ref_uses_branch_mapping(self) -> None:
        config = AppConfig.from_dict(BASE_CONFIG)
        self.assertEqual(config.selector_for_ref("refs/heads/main"), "production")
        self.assertEqual(config.selector_for_ref("main"), "production")
        self.assertEqual(config.selector_for_ref("feature/x"), "staging")
        self.assertEqual(config.selector_for_ref(None), "staging")


class TargetRegistryTests(unittest.TestCase):
    def setUp(self) -> None:
        self.registry = AppConfig.from_dict(BASE_CONFIG).targets

    def test_select_by_group_keeps_registry_order(self) -> None:
        names = [t.name for t in self.registry.select("stage,production")]
        self.assertEqual(names, ["web1", "web2", "stage"])

    def test_select_all_and_dedup(self) -> None:
        self.assertEqual(len(self.registry.select("all,web1")), 3)

    def test_unknown_selector_token(self) -> None:
        with self.assertRaises(ConfigurationError):
            self.registry.select("web9")

    def test_duplicate_registration(self) -> None:
        registry = TargetRegistry()
        registry.register(Target(name="a", host="h", deploy_root="/srv"))
        with self.assertRaises(ConfigurationError):
            registry.register(Target(name="a", host="h2", deploy_root="/srv"))


def test_default_pipeline_phases():
    build, activate = split_phases(build_pipeline(DEFAULT_PIPELINE))
    assert [step.name for step in build] == ["fetch"]
    assert [step.name for step in activate] == ["activate", "reload-nginx"]
    assert all(step.phase == ACTIVATE for step in activate)
    assert build[0].phase == BUILD


def test_pipeline_requires_single_activate():
    with pytest.raises(ConfigurationError):
        build_pipeline([{"type": "git_checkout"}])
    with pytest.raises(ConfigurationError):
        build_pipeline([{"type": "activate"}, {"type": "activate", "name": "again"}])


def test_pipeline_rejects_unknown_types_and_duplicate_names():
    with pytest.raises(ConfigurationError):
        build_pipeline([{"type": "teleport"}, {"type": "activate"}])
    with pytest.raises(ConfigurationError):
        build_pipeline([
            {"type": "command", "name": "x", "command": "true"},
            {"type": "command", "name": "x", "command": "false"},
            {"type": "activate"},
        ])


def test_local_target_needs_no_username():
    target = Target.from_dict("dev", {"transport": "local", "deploy_root": "/tmp/site"})
    assert target.host == "localhost"
    assert target.transport == "local"
