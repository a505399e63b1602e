"""Entry point for running the wager bot via python -m wager_bot"""

import asyncio

from wager_bot.runtime import main

if __name__ == "__main__":
    asyncio.run(main())
