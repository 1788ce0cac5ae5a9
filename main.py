"""Story AI - dev launcher. Serves the API with auto-reload."""

import argparse
import os
import subprocess
import sys
from pathlib import Path

from dotenv import load_dotenv

ROOT = Path(__file__).parent
load_dotenv(ROOT / ".env")

HOST = os.getenv("HOST", "0.0.0.0")
PORT = os.getenv("PORT", "13013")


def main():
    parser = argparse.ArgumentParser(description="Story AI dev launcher")
    parser.add_argument("--settings", type=Path, default=None,
                        help="Settings JSON file (default: ./data/settings.json)")
    args = parser.parse_args()

    env = os.environ.copy()
    if args.settings:
        env["STORY_AI_SETTINGS"] = str(args.settings.resolve())

    print(f"Starting API on http://localhost:{PORT} ...")
    proc = subprocess.Popen(
        [sys.executable, "-m", "uvicorn", "story_ai.app:app", "--reload", "--host", HOST, "--port", PORT],
        cwd=ROOT, env=env,
    )
    try:
        proc.wait()
    except KeyboardInterrupt:
        print("\nShutting down...")
        proc.terminate()
        proc.wait()


if __name__ == "__main__":
    main()
