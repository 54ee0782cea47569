import logging

from donor_draws.config import TIPCC_BOT_ID, load_config, setup_logging


def test_defaults(monkeypatch):
    for name in ("DISCORD_TOKEN", "BOT_TOKEN", "SERVER_IDS", "TIP_BOT_ID", "DATA_DIR",
                 "PRICE_OVERRIDES", "MAX_BACKUPS", "SCHEDULER_INTERVAL_SECONDS"):
        monkeypatch.delenv(name, raising=False)
    cfg = load_config()
    assert cfg["token"] == ""
    assert cfg["server_ids"] == []
    assert cfg["tip_bot_id"] == TIPCC_BOT_ID
    assert cfg["data_dir"] == "data"
    assert cfg["max_backups"] == 5
    assert cfg["scheduler_interval"] == 60.0
    assert cfg["price_overrides"] == {}


def test_values_from_environment(monkeypatch):
    monkeypatch.setenv("DISCORD_TOKEN", "abc")
    monkeypatch.setenv("SERVER_IDS", "1, 2,,3")
    monkeypatch.setenv("PRICE_OVERRIDES", '{"xla": "0.0002", "bad": "x"}')
    monkeypatch.setenv("NOTIFY_LEAD_MINUTES", "15")
    cfg = load_config()
    assert cfg["token"] == "abc"
    assert cfg["server_ids"] == ["1", "2", "3"]
    assert cfg["price_overrides"] == {"XLA": 0.0002}
    assert cfg["notify_lead_minutes"] == 15.0


def test_invalid_overrides_are_ignored(monkeypatch):
    monkeypatch.setenv("PRICE_OVERRIDES", "{nope")
    assert load_config()["price_overrides"] == {}


def test_setup_logging_adds_file_handler(tmp_path):
    root = logging.getLogger()
    before = list(root.handlers)
    try:
        setup_logging(str(tmp_path / "bot.log"))
        added = [h for h in root.handlers if h not in before]
        assert any(isinstance(h, logging.FileHandler) for h in added)
    finally:
        for h in root.handlers[:]:
            if h not in before:
                root.removeHandler(h)
                h.close()
