from __future__ import annotations

from sqlview.shared.logging import get_logger


def test_logger_info_routes_to_stderr(capfd) -> None:
    logger = get_logger()

    logger.info("structured log to stderr")

    captured = capfd.readouterr()
    assert "structured log to stderr" in captured.err
    assert "structured log to stderr" not in captured.out


def test_logger_debug_requires_verbose(capfd) -> None:
    get_logger().debug("hidden detail")
    get_logger(verbose=True).debug("visible detail")

    captured = capfd.readouterr()
    assert "hidden detail" not in captured.err
    assert "visible detail" in captured.err


def test_logger_does_not_interpret_markup(capfd) -> None:
    get_logger().warning("table [bold]orders[/bold]")

    captured = capfd.readouterr()
    assert "[bold]orders[/bold]" in captured.err


def test_logger_keeps_stdout_clear_at_every_level(capfd) -> None:
    logger = get_logger(verbose=True)
    for emit in (logger.info, logger.success, logger.warning, logger.error, logger.debug):
        emit(f"{emit.__name__} line")

    captured = capfd.readouterr()
    assert captured.out == ""
    for level in ("info", "success", "warning", "error", "debug"):
        assert f"{level} line" in captured.err
    assert not hasattr(logger, "console")
