from __future__ import annotations

from unittest.mock import patch

import pytest

import facturador.config as config_mod


class TestResolveDir:
    def test_from_env_var(self, monkeypatch, tmp_path):
        monkeypatch.setenv("FACTURADOR_CONFIG_DIR", str(tmp_path))
        result = config_mod._resolve_dir("FACTURADOR_CONFIG_DIR", "config", kind="config")
        assert result == tmp_path

    def test_project_root_fallback(self, monkeypatch, tmp_path):
        monkeypatch.delenv("FACTURADOR_CONFIG_DIR", raising=False)
        fake_root = tmp_path / "src" / "facturador"
        fake_root.mkdir(parents=True)
        config_dir = tmp_path / "config"
        config_dir.mkdir()

        # Patch __file__ so project_root resolves to tmp_path
        monkeypatch.setattr(config_mod, "__file__", str(fake_root / "config.py"))
        result = config_mod._resolve_dir("FACTURADOR_CONFIG_DIR", "config", kind="config")
        assert result == config_dir

    def test_platformdirs_fallback_data(self, monkeypatch, tmp_path):
        monkeypatch.delenv("FACTURADOR_DATA_DIR", raising=False)
        fake = tmp_path / "nowhere" / "src" / "facturador"
        fake.mkdir(parents=True)
        monkeypatch.setattr(config_mod, "__file__", str(fake / "config.py"))
        result = config_mod._resolve_dir("FACTURADOR_DATA_DIR", "data", kind="data")
        assert "facturador-dte" in str(result)


class TestEnvDirs:
    def test_env_dir_under_data_dir(self, monkeypatch, tmp_path):
        monkeypatch.setenv("FACTURADOR_DATA_DIR", str(tmp_path))
        assert config_mod.get_env_dir("pruebas") == tmp_path / "pruebas"
        assert config_mod.get_issued_dir("produccion") == tmp_path / "produccion" / "issued"


class TestSecrets:
    def test_mh_password_from_env(self, monkeypatch):
        monkeypatch.setenv("MH_PASSWORD", "s3cret")
        assert config_mod.get_mh_password() == "s3cret"

    def test_mh_password_from_keyring(self, monkeypatch):
        monkeypatch.delenv("MH_PASSWORD", raising=False)
        with patch.object(config_mod, "_get_keyring_password", return_value="from-keyring"):
            assert config_mod.get_mh_password() == "from-keyring"

    def test_firmador_password_missing(self, monkeypatch):
        monkeypatch.delenv("FIRMADOR_PASSWORD", raising=False)
        with patch.object(config_mod, "_get_keyring_password", return_value=None):
            with pytest.raises(KeyError):
                config_mod.get_firmador_password()

    def test_keyring_failure_returns_none(self):
        with patch("keyring.get_password", side_effect=RuntimeError("no backend")):
            assert config_mod._get_keyring_password("mh-password") is None


class TestServiceUrls:
    def test_firmador_default(self, monkeypatch):
        monkeypatch.delenv("FIRMADOR_URL", raising=False)
        assert config_mod.get_firmador_url() == "http://localhost:8113"

    def test_firmador_strips_slash(self, monkeypatch):
        monkeypatch.setenv("FIRMADOR_URL", "http://firmador:8113/")
        assert config_mod.get_firmador_url() == "http://firmador:8113"

    def test_notify_url_empty_is_none(self, monkeypatch):
        monkeypatch.setenv("FACTURADOR_NOTIFY_URL", "")
        assert config_mod.get_notify_url() is None


class TestDefaultEnv:
    def test_default_is_pruebas(self, monkeypatch):
        monkeypatch.delenv("FACTURADOR_ENV", raising=False)
        assert config_mod.get_default_env() == "pruebas"

    def test_unknown(self, monkeypatch):
        monkeypatch.setenv("FACTURADOR_ENV", "staging")
        with pytest.raises(ValueError, match="staging"):
            config_mod.get_default_env()

    def test_env_from_ambiente(self):
        assert config_mod.env_from_ambiente("00") == "pruebas"
        assert config_mod.env_from_ambiente("01") == "produccion"
        with pytest.raises(KeyError):
            config_mod.env_from_ambiente("99")


class TestYamlConfig:
    def test_load_emitter_and_clients(self, monkeypatch, config_dir):
        monkeypatch.setenv("FACTURADOR_CONFIG_DIR", str(config_dir))
        assert config_mod.load_emitter()["nrc"] == "1234567"
        assert config_mod.list_clients() == ["la-ceiba", "maria"]
        assert config_mod.load_client("maria")["tipo_documento"] == "13"

    def test_missing_client(self, monkeypatch, config_dir):
        monkeypatch.setenv("FACTURADOR_CONFIG_DIR", str(config_dir))
        with pytest.raises(FileNotFoundError):
            config_mod.load_client("nadie")

    def test_list_clients_without_dir(self, monkeypatch, tmp_path):
        monkeypatch.setenv("FACTURADOR_CONFIG_DIR", str(tmp_path))
        assert config_mod.list_clients() == []

    def test_void_windows(self):
        assert config_mod.VOID_WINDOW_DAYS["01"] == 90
        assert config_mod.VOID_WINDOW_DAYS["03"] == 1
