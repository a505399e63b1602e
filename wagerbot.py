#!/usr/bin/env python3
"""Discord bot arbitrating wager and war challenges through ticket channels."""

from __future__ import annotations

import asyncio

from wager_bot.runtime import main


def run() -> None:  # pragma: no cover - CLI entry point
    asyncio.run(main())


if __name__ == "__main__":
    run()
