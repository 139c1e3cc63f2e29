"""Delete every driver and order record (useful for testing).

Only the Redis backend outlives a process; the in-memory store is emptied by
restarting the service, so this script refuses to run against it.
"""

import asyncio

from fleetdispatch.config import get_settings
from fleetdispatch.state.manager import create_state_manager


async def reset_all_state() -> bool:
    """Clear all driver and order records. Returns whether anything was reset."""
    settings = get_settings()

    if settings.state_backend != "redis":
        print(
            f"\nThe {settings.state_backend} backend keeps no records outside the "
            "running service; restart it to start empty."
        )
        print("Set STATE_BACKEND=redis to reset a shared store.\n")
        return False

    print(f"\n⚠️  WARNING: This will delete ALL records from {settings.redis_url}!")
    response = input("Are you sure? (yes/no): ")

    if response.lower() != "yes":
        print("Cancelled.")
        return False

    print("\nResetting state...")

    state_manager = create_state_manager(settings)
    await state_manager.connect()
    try:
        await state_manager.flush()
    finally:
        await state_manager.disconnect()

    print("✓ All records cleared\n")
    return True


if __name__ == "__main__":
    asyncio.run(reset_all_state())
