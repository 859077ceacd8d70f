#!/usr/bin/env python3
"""
Setup Verification Script

Validates configuration and connections before running the service.
Run this after setting up your .env file to ensure everything is configured correctly.

Usage:
    python scripts/verify_setup.py
    python scripts/verify_setup.py --send-test-card   # also posts a test card to the nurse channel
"""

import asyncio
import sys
from pathlib import Path

# Add project root to path
project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root))


def print_header(title: str) -> None:
    """Print section header."""
    print(f"\n{'='*60}")
    print(f" {title}")
    print(f"{'='*60}")


def print_result(name: str, success: bool, message: str = "") -> None:
    """Print check result."""
    status = "[PASS]" if success else "[FAIL]"
    color = "\033[92m" if success else "\033[91m"
    reset = "\033[0m"
    msg = f" - {message}" if message else ""
    print(f"  {color}{status}{reset} {name}{msg}")


def check_env_file() -> bool:
    """Check if .env file exists (settings fall back to defaults without it)."""
    env_path = project_root / ".env"
    exists = env_path.exists()
    if not exists:
        print_result(".env file", False, "File not found, using environment and defaults")
    else:
        print_result(".env file", True, "Found")
    return exists


def check_dependencies() -> bool:
    """Check if required Python packages are installed."""
    required_packages = [
        "fastapi",
        "uvicorn",
        "pydantic",
        "pydantic_settings",
        "redis",
        "httpx",
    ]

    missing = []
    for package in required_packages:
        try:
            __import__(package)
        except ImportError:
            missing.append(package)

    if missing:
        print_result("Python packages", False, f"Missing: {', '.join(missing)}")
        return False
    print_result("Python packages", True, "All required packages installed")
    return True


def check_settings() -> dict[str, bool]:
    """Check safety-critical settings."""
    from app.config import get_settings

    settings = get_settings()
    results = {}

    results["webhook"] = bool(settings.teams_webhook_url)
    if results["webhook"]:
        url = settings.teams_webhook_url
        masked = f"{url[:30]}...{url[-4:]}" if len(url) > 40 else "***"
        print_result("TEAMS_WEBHOOK_URL", True, f"Set ({masked})")
    else:
        print_result("TEAMS_WEBHOOK_URL", False, "Not set - crisis alerts cannot be delivered")

    results["redis"] = bool(settings.redis_url)
    print_result("REDIS_URL", results["redis"], settings.redis_url or "Not set")

    print_result(
        "Notification retries",
        settings.notification_max_retries >= 1,
        f"{settings.notification_max_retries} attempts, "
        f"{settings.notification_retry_delay_seconds}s delay, "
        f"x{settings.notification_backoff_multiplier} backoff",
    )
    print_result("Safety SLA", True, f"{settings.safety_analysis_sla_ms:.0f}ms")
    print_result(
        "CONTENT_SEARCH_URL",
        True,
        settings.content_search_url or "Not set (responder text only)",
    )
    return results


def check_trigger_table() -> bool:
    """Load the trigger table the analyzer will use."""
    try:
        from app.safety.trigger_table import get_trigger_table

        table = get_trigger_table()
        print_result(
            "Trigger table",
            True,
            f"{table.version}: {len(table.entries)} phrases, {len(table.patterns)} patterns",
        )
        return True

    except (OSError, ValueError) as e:
        print_result("Trigger table", False, str(e)[:80])
        return False


async def check_redis() -> bool:
    """Verify Redis connection."""
    from app.infra.redis import check_redis_health

    healthy = await check_redis_health()
    if healthy:
        print_result("Redis", True, "Connection successful")
    else:
        print_result("Redis", False, "Connection failed (will use in-memory fallback)")
    return healthy


async def check_webhook(send_test_card: bool) -> bool:
    """Post a connection test card to the nurse team channel."""
    if not send_test_card:
        print_result("Nurse team webhook", True, "Skipped - pass --send-test-card to post a test card")
        return True

    from app.infra.notifications import get_notification_service

    service = get_notification_service()
    try:
        delivered = await service.test_connection()
    finally:
        await service.close()

    if delivered:
        print_result("Nurse team webhook", True, "Test card acknowledged")
    else:
        print_result("Nurse team webhook", False, "Test card not acknowledged")
    return delivered


async def check_content_search() -> bool:
    """Check if the content search service answers."""
    from app.core.content.search import get_content_search_client

    client = get_content_search_client()
    if not client.base_url:
        print_result("Content search", True, "Not configured")
        return True

    try:
        result = await client.search_content("cervical screening")
    finally:
        await client.close()

    print_result("Content search", True, f"Reachable at {client.base_url} (found={result.found})")
    return True


async def main(argv: list[str]) -> int:
    """Run all verification checks."""
    send_test_card = "--send-test-card" in argv

    print("\n" + "="*60)
    print(" Ask Eve Assist - Setup Verification")
    print("="*60)

    all_passed = True
    critical_failed = False

    # Check .env file
    print_header("Environment File")
    check_env_file()  # Non-critical

    # Check dependencies
    print_header("Python Dependencies")
    if not check_dependencies():
        print_header("Summary")
        print("\n  \033[91mCRITICAL: Install the project first: pip install -e .\033[0m\n")
        return 1

    # Check settings
    print_header("Configuration")
    setting_results = check_settings()
    if not setting_results["webhook"]:
        critical_failed = True

    print_header("Safety")
    if not check_trigger_table():
        critical_failed = True

    # Check services
    print_header("Service Connections")

    if setting_results["redis"]:
        if not await check_redis():
            all_passed = False  # Graceful degradation
    else:
        print_result("Redis", False, "Skipped - REDIS_URL not set")
        all_passed = False

    if setting_results["webhook"]:
        if not await check_webhook(send_test_card):
            critical_failed = True
    else:
        print_result("Nurse team webhook", False, "Skipped - TEAMS_WEBHOOK_URL not set")

    await check_content_search()  # Non-critical

    # Summary
    print_header("Summary")

    if critical_failed:
        print("\n  \033[91mCRITICAL: Crisis escalation is not fully configured.\033[0m")
        print("  Please fix the issues above before running the service.")
        print("\n  Quick fixes:")
        if not setting_results["webhook"]:
            print("  1. Create an incoming webhook in the nurse team channel")
            print("     Add to .env: TEAMS_WEBHOOK_URL=https://...")
        print()
        return 1
    elif not all_passed:
        print("\n  \033[93mWARNING: Some optional checks failed.\033[0m")
        print("  The service will run with limited functionality.")
        print()
        return 0
    else:
        print("\n  \033[92mAll checks passed!\033[0m")
        print("  You can start the service with:")
        print("    uvicorn app.main:app --reload")
        print()
        return 0


if __name__ == "__main__":
    exit_code = asyncio.run(main(sys.argv[1:]))
    sys.exit(exit_code)
