import json

from blobsaver.config_service import CONFIG_FILENAME, get_default_config, load_config, save_config


def test_defaults_when_no_file(tmp_path):
    assert load_config(str(tmp_path)) == get_default_config()


def test_file_values_override_defaults(tmp_path):
    (tmp_path / CONFIG_FILENAME).write_text(json.dumps({"tsschecker_path": "/opt/tsschecker"}))
    cfg = load_config(str(tmp_path))
    assert cfg["tsschecker_path"] == "/opt/tsschecker"
    assert cfg["failure_policy"] == "abort"


def test_broken_file_falls_back_to_defaults(tmp_path):
    (tmp_path / CONFIG_FILENAME).write_text("{not json")
    assert load_config(str(tmp_path)) == get_default_config()


def test_save_then_load(tmp_path):
    cfg = get_default_config()
    cfg["ecid"] = "1234"
    save_config(str(tmp_path), cfg)
    assert load_config(str(tmp_path))["ecid"] == "1234"
