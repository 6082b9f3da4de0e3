#!/usr/bin/env python3
"""
Launcher for the PID tuner service; creates its own virtualenv on first run.
"""

import argparse
import logging
import os
import shutil
import subprocess
import sys
from pathlib import Path

REPO_ROOT = Path(__file__).resolve().parent
VENV_DIR = REPO_ROOT / ".venv-pid-tuner"
VENV_PYTHON = VENV_DIR / ("Scripts/python.exe" if os.name == "nt" else "bin/python")


def _running_in_target_venv() -> bool:
    try:
        return Path(sys.prefix).resolve() == VENV_DIR.resolve()
    except OSError:
        return False


def _create_venv() -> None:
    candidates = ["/usr/bin/python3", shutil.which("python3"), sys.executable]
    base_python = None
    for candidate in candidates:
        if candidate and Path(candidate).exists():
            base_python = candidate
            break
    if base_python is None:
        raise RuntimeError("No Python interpreter found to create the virtualenv.")
    subprocess.check_call([base_python, "-m", "venv", str(VENV_DIR)])


def _reexec_in_venv() -> None:
    args = [str(VENV_PYTHON), str(Path(__file__).resolve())] + sys.argv[1:]
    os.execv(str(VENV_PYTHON), args)


def _ensure_requirements() -> None:
    try:
        import fastapi  # noqa: F401
        import sklearn  # noqa: F401
        import uvicorn  # noqa: F401
        return
    except ImportError:
        pass

    print("Installing dependencies into the virtualenv...")
    subprocess.check_call([str(VENV_PYTHON), "-m", "pip", "install", "-e", str(REPO_ROOT)])


def _configure_logging(level: str) -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="[TUNER][%(asctime)s] %(message)s",
        datefmt="%H:%M:%S",
    )


def parse_args(argv=None) -> argparse.Namespace:
    ap = argparse.ArgumentParser(description="Balancing robot PID tuner (HTTP + websocket UI backend).")
    ap.add_argument("--host", default="0.0.0.0")
    ap.add_argument("--port", type=int, default=8000)
    ap.add_argument("--log-level", default="info", choices=["debug", "info", "warning", "error"])
    ap.add_argument("--reload", action="store_true", help="Restart on source changes (development).")
    ap.add_argument("--no-venv", action="store_true", help="Run with the current interpreter.")
    return ap.parse_args(argv)


def main() -> int:
    args = parse_args()
    os.chdir(REPO_ROOT)

    if not args.no_venv and not _running_in_target_venv():
        try:
            if not VENV_PYTHON.exists():
                print("Creating virtualenv in %s..." % VENV_DIR, flush=True)
                _create_venv()
            _reexec_in_venv()
        except (OSError, RuntimeError, subprocess.CalledProcessError) as exc:
            print("Error preparing virtualenv: %s" % exc)
            return 1

    try:
        if not args.no_venv:
            _ensure_requirements()
        import uvicorn
    except (ImportError, subprocess.CalledProcessError) as exc:
        print("Error loading dependencies: %s" % exc)
        return 1

    _configure_logging(args.log_level)
    logging.getLogger(__name__).info("Using Python %s", sys.executable)
    logging.getLogger(__name__).info("Serving on http://localhost:%d", args.port)

    uvicorn.run(
        "tools.pid_tuner.app.main:app",
        host=args.host,
        port=args.port,
        reload=args.reload,
        log_level=args.log_level,
        log_config=None,
    )
    return 0


if __name__ == "__main__":
    sys.exit(main())
