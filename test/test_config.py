from pathlib import Path

from kamal_dash.config import LOG_CAP_MAX, LOG_CAP_MIN, Settings, find_deploy_configs, secrets_path


def write(root, name, text):
    path = root / "config" / name
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(text)
    return path


def test_no_config_dir(tmp_path):
    assert find_deploy_configs(tmp_path) == []


def test_base_only(tmp_path):
    write(tmp_path, "deploy.yml", "service: shop\n")
    (d,) = find_deploy_configs(tmp_path)
    assert d.name == ""
    assert d.service == "shop"
    assert d.label == "shop (production)"


def test_overlays_inherit_service(tmp_path):
    write(tmp_path, "deploy.yml", "service: shop\n")
    write(tmp_path, "deploy.staging.yml", "servers: [a]\n")
    write(tmp_path, "deploy.eu.yml", "service: shop-eu\n")
    found = find_deploy_configs(tmp_path)
    assert [(d.name, d.service) for d in found] == [("eu", "shop-eu"), ("staging", "shop")]


def test_overlay_without_base_uses_its_name(tmp_path):
    write(tmp_path, "deploy.qa.yml", "servers: [a]\n")
    (d,) = find_deploy_configs(tmp_path)
    assert d.service == "qa"


def test_broken_files_are_skipped(tmp_path):
    write(tmp_path, "deploy.yml", "service: shop\n")
    write(tmp_path, "deploy.bad.yml", "service: [unterminated\n")
    write(tmp_path, "deploy.list.yml", "- a\n- b\n")
    write(tmp_path, "other.yml", "service: nope\n")
    found = find_deploy_configs(tmp_path)
    assert [d.name for d in found] == [""]


def test_secrets_path(tmp_path):
    assert secrets_path(tmp_path, None) == tmp_path / ".kamal" / "secrets"
    write(tmp_path, "deploy.staging.yml", "service: shop\n")
    (d,) = find_deploy_configs(tmp_path)
    assert secrets_path(tmp_path, d) == tmp_path / ".kamal" / "secrets-staging"


def test_settings_from_env(monkeypatch, tmp_path):
    monkeypatch.setenv("KDASH_SSH_BIN", "/usr/local/bin/ssh")
    monkeypatch.setenv("KDASH_TIMEOUT", "12.5")
    monkeypatch.setenv("KDASH_LOG_CAP", "99999")
    monkeypatch.setenv("KDASH_LOG_FILE", str(tmp_path / "kdash.log"))
    monkeypatch.setenv("KDASH_LOG_LEVEL", "debug")
    monkeypatch.setenv("KDASH_CONTROL_DIR", str(tmp_path))
    s = Settings.from_env()
    assert s.ssh_bin == "/usr/local/bin/ssh"
    assert s.timeout == 12.5
    assert s.log_cap == LOG_CAP_MAX
    assert s.log_file == tmp_path / "kdash.log"
    assert s.log_level == "DEBUG"
    assert s.control_dir == Path(tmp_path)


def test_settings_defaults_and_bad_values(monkeypatch):
    for name in ("KDASH_SSH_BIN", "KDASH_LOG_FILE", "KDASH_LOG_LEVEL", "KDASH_CONTROL_DIR"):
        monkeypatch.delenv(name, raising=False)
    monkeypatch.setenv("KDASH_TIMEOUT", "soon")
    monkeypatch.setenv("KDASH_LOG_CAP", "10")
    s = Settings.from_env()
    assert s.ssh_bin == "ssh"
    assert s.timeout == 30.0
    assert s.log_cap == LOG_CAP_MIN
    assert s.log_file is None
