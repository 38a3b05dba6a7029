from unittest.mock import patch

from materials_api import main


@patch("materials_api.main.uvicorn.run")
def test_run_serves_app_with_uvicorn(mock_run):
    main.run()

    mock_run.assert_called_once_with(
        main.app,
        host=main.default_settings.HOST,
        port=main.default_settings.PORT,
        log_level=main.default_settings.LOG_LEVEL.lower(),
    )


def test_create_app_builds_limiter_from_settings():
    app = main.create_app()

    limiter = app.state.rate_limiter
    assert limiter.cache.max_size == main.default_settings.RATE_LIMIT_CACHE_SIZE
    assert limiter.cache.ttl_ms == main.default_settings.RATE_LIMIT_CACHE_TTL_MS
    assert limiter is not main.app.state.rate_limiter
