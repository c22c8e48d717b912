"""Configuration parsing tests."""

from workshop_sync.core.config import DEFAULT_REALTIME_TABLES, Settings


def test_realtime_tables_accepts_csv(monkeypatch) -> None:
    """CSV string in env parses into a list of table names."""
    monkeypatch.setenv("REALTIME_TABLES", "inspection_requests, Clients,cars")
    cfg = Settings()
    assert cfg.realtime_tables == ["inspection_requests", "clients", "cars"]


def test_realtime_tables_accepts_json_array(monkeypatch) -> None:
    """JSON array string in env parses into a list of table names."""
    monkeypatch.setenv("REALTIME_TABLES", '["inspection_requests","cars","cars"]')
    cfg = Settings()
    assert cfg.realtime_tables == ["inspection_requests", "cars"]


def test_realtime_tables_blank_falls_back_to_defaults(monkeypatch) -> None:
    """An empty value keeps the default subscription list."""
    monkeypatch.setenv("REALTIME_TABLES", "  ")
    cfg = Settings()
    assert cfg.realtime_tables == DEFAULT_REALTIME_TABLES


def test_realtime_tables_rejects_invalid_object(monkeypatch) -> None:
    """Invalid values fail with a clear validation error."""
    monkeypatch.setenv("REALTIME_TABLES", '{"invalid":"json"}')
    try:
        Settings()
    except Exception as exc:
        assert "REALTIME_TABLES" in str(exc)
    else:
        raise AssertionError("Expected invalid REALTIME_TABLES to fail")


def test_feed_defaults(monkeypatch) -> None:
    """Page size and search limits default to the dashboard's values."""
    for name in ("REQUESTS_PAGE_SIZE", "SEARCH_RESULT_LIMIT", "RECENTLY_DELETED_TTL_SECONDS"):
        monkeypatch.delenv(name, raising=False)
    cfg = Settings(_env_file=None)
    assert cfg.requests_page_size == 50
    assert cfg.search_result_limit == 50
    assert cfg.recently_deleted_ttl_seconds >= 2
