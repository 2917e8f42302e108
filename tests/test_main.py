from unittest.mock import MagicMock, patch

from errors import CacheError
from main import build_config, main, parse_args


def test_parse_args_defaults() -> None:
    args = parse_args([])

    assert args.command == "run"
    assert args.mode == "backfill"
    assert args.start == 0
    assert args.limit is None
    assert args.dry_run is False


def test_build_config_weekly_with_target() -> None:
    config = build_config(parse_args(["run", "--mode", "weekly", "--days", "14", "--target", "50"]))

    assert config.mode == "weekly"
    assert config.target == 50
    assert (config.until_date - config.from_date).days == 14


def test_build_config_backfill_dry_run() -> None:
    config = build_config(parse_args(["process", "--dry-run"]))

    assert config.mode == "backfill"
    assert config.dry_run is True
    assert config.target == 1000


def test_main_process_passes_window() -> None:
    controller = MagicMock()
    with patch("main.load_dotenv"), patch("main.RunController", return_value=controller):
        code = main(["process", "--start", "100", "--limit", "50"])

    assert code == 0
    controller.process.assert_called_once_with(start=100, limit=50)


def test_main_returns_error_code_on_pipeline_failure() -> None:
    controller = MagicMock()
    controller.collect.side_effect = CacheError("disk full")
    with patch("main.load_dotenv"), patch("main.RunController", return_value=controller):
        code = main(["collect"])

    assert code == 1
