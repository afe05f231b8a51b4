"""Command line entry point for inspecting and maintaining calibration state."""

import argparse
import asyncio
import json
import logging
import sys
from pathlib import Path
from typing import Any, Optional

from furlong.calibration.dataset import DatasetManager
from furlong.calibration.manager import CalibrationManager, create_calibration_manager
from furlong.calibration.platt import serialize_parameters
from furlong.calibration.storage import SqlCalibrationStore
from furlong.config import Settings, get_settings
from furlong.models.database import create_engine_for, init_db, session_factory

logger = logging.getLogger(__name__)


def _print(payload: Any) -> None:
    print(json.dumps(payload, indent=2, default=str))


async def _status(manager: CalibrationManager, dataset: DatasetManager, args) -> int:
    status = await manager.get_status()
    _print({
        "state": manager.state.value,
        **status.to_dict(),
        "dataset": (await dataset.get_dataset_stats()).to_dict(),
    })
    return 0


async def _recalibrate(manager: CalibrationManager, dataset: DatasetManager, args) -> int:
    params = await manager.recalibrate()
    if params is None:
        _print({"fitted": False, "races_needed": await dataset.get_races_needed()})
        return 1
    _print({"fitted": True, "parameters": serialize_parameters(params)})
    return 0


async def _metrics(manager: CalibrationManager, dataset: DatasetManager, args) -> int:
    metrics = await manager.get_comprehensive_metrics()
    if metrics is None:
        _print({"error": "No completed races with predictions"})
        return 1
    payload = {"calibrated": manager.is_ready, **metrics.to_dict()}
    if args.folds:
        cv = await manager.run_cross_validation(args.folds)
        payload["cross_validation"] = None if cv is None else {
            "folds": len(cv.folds),
            "avg_brier_score": round(cv.avg_brier_score, 4),
            "avg_log_loss": round(cv.avg_log_loss, 4),
            "brier_std_dev": round(cv.brier_std_dev, 4),
        }
    _print(payload)
    return 0


async def _validate(manager: CalibrationManager, dataset: DatasetManager, args) -> int:
    report = await dataset.validate_dataset()
    _print({
        "valid": report.valid,
        "issues": report.issues,
        "warnings": report.warnings,
        "quality": await dataset.get_data_quality_summary(),
    })
    return 0 if report.valid else 1


async def _export(manager: CalibrationManager, dataset: DatasetManager, args) -> int:
    payload = await manager.store.export_json()
    path = Path(args.path)
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(payload, encoding="utf-8")
    _print({"exported_to": str(path), "races": await manager.store.count_races()})
    return 0


async def _import(manager: CalibrationManager, dataset: DatasetManager, args) -> int:
    path = Path(args.path)
    if not path.exists():
        _print({"error": f"File not found: {path}"})
        return 1
    result = await manager.store.import_json(path.read_text(encoding="utf-8"))
    _print({"imported": result.imported, "skipped": result.skipped, "errors": result.errors})
    return 0 if not result.errors else 1


async def _reset(manager: CalibrationManager, dataset: DatasetManager, args) -> int:
    await manager.reset()
    cleared = await manager.store.clear_all() if args.clear_races else False
    _print({"reset": True, "races_cleared": cleared})
    return 0


COMMANDS = {
    "status": _status,
    "recalibrate": _recalibrate,
    "metrics": _metrics,
    "validate": _validate,
    "export": _export,
    "import": _import,
    "reset": _reset,
}


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="furlong", description="Win probability calibration tools")
    parser.add_argument("--db-path", default=None, help="Override the configured database file")
    sub = parser.add_subparsers(dest="command", required=True)

    sub.add_parser("status", help="Show calibration readiness and parameters")
    sub.add_parser("recalibrate", help="Fit new parameters now")
    metrics = sub.add_parser("metrics", help="Score the active calibration on completed races")
    metrics.add_argument("--folds", type=int, default=0, help="Also run k-fold cross-validation")
    sub.add_parser("validate", help="Check dataset integrity")
    export = sub.add_parser("export", help="Write the dataset to a JSON file")
    export.add_argument("path")
    import_ = sub.add_parser("import", help="Load races from a JSON export")
    import_.add_argument("path")
    reset = sub.add_parser("reset", help="Discard fitted parameters")
    reset.add_argument("--clear-races", action="store_true", help="Also delete every stored race")
    return parser


async def run(args: argparse.Namespace, settings: Optional[Settings] = None) -> int:
    settings = settings or get_settings()
    if args.db_path:
        settings = settings.model_copy(update={"db_path": Path(args.db_path)})

    engine = create_engine_for(settings.database_url, echo=settings.debug)
    try:
        await init_db(engine)
        store = SqlCalibrationStore(session_factory(engine))
        manager = create_calibration_manager(settings, store)
        try:
            return await COMMANDS[args.command](manager, manager.dataset, args)
        finally:
            await manager.wait_for_pending_fit()
    finally:
        await engine.dispose()


def main(argv: Optional[list[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    settings = get_settings()
    logging.basicConfig(
        level=getattr(logging, settings.log_level.upper(), logging.INFO),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )
    return asyncio.run(run(args, settings))


if __name__ == "__main__":
    sys.exit(main())
