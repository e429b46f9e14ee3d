#!/usr/bin/env python3
"""
ProctorWatch integrity service - startup script
Checks the environment, then serves proctorwatch.main:app with uvicorn.
"""

import os
import sys
from pathlib import Path

REQUIRED_VARS = ["SECRET_KEY", "SUPABASE_URL", "SUPABASE_KEY"]


def check_environment() -> bool:
    """Check that the required settings are present"""
    print("Checking environment setup...")

    from dotenv import load_dotenv

    if not Path(".env").exists():
        print("WARNING: .env file not found; relying on the process environment")
    load_dotenv()

    missing = [var for var in REQUIRED_VARS if not os.getenv(var)]
    if missing:
        print("ERROR: Missing required environment variables:")
        for var in missing:
            print(f"   - {var}")
        return False

    if os.getenv("KEYBOARD_HOOK_ENABLED", "").lower() in ("1", "true", "yes"):
        print("NOTE: global keyboard hook is enabled; Alt+Tab, Windows and Ctrl+Esc will be blocked during exams")

    print("Environment check passed")
    return True


def main():
    if not check_environment():
        sys.exit(1)

    import uvicorn
    from proctorwatch.config import settings

    print(f"\nStarting {settings.APP_NAME} on http://{settings.host}:{settings.port}")
    print(f"   API docs:     http://localhost:{settings.port}/docs")
    print(f"   Health check: http://localhost:{settings.port}/health\n")

    try:
        uvicorn.run(
            "proctorwatch.main:app",
            host=settings.host,
            port=settings.port,
            reload=settings.debug,
            log_level=settings.LOG_LEVEL.lower(),
        )
    except KeyboardInterrupt:
        print("\nServer stopped by user")


if __name__ == "__main__":
    main()
