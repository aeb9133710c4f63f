import monitor_booking


def test_init_creates_database(tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    monkeypatch.setenv("DATABASE_URL", "sqlite:///state/bookwatcher.db")
    monkeypatch.delenv("TELEGRAM_BOT_TOKEN", raising=False)

    assert monitor_booking.main(["--init"]) == 0
    assert (tmp_path / "state" / "bookwatcher.db").exists()


def test_missing_token_is_fatal(tmp_path, monkeypatch, caplog):
    monkeypatch.chdir(tmp_path)
    monkeypatch.setenv("TELEGRAM_BOT_TOKEN", "")

    with caplog.at_level("ERROR"):
        assert monitor_booking.main(["--run"]) == 1
    assert "TELEGRAM_BOT_TOKEN is required" in caplog.text


def test_no_mode_prints_help(tmp_path, monkeypatch, capsys):
    monkeypatch.chdir(tmp_path)

    assert monitor_booking.main([]) == 1
    assert "--serve" in capsys.readouterr().out
