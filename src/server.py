"""Protean Engine runner for the outbound domain.

In production (``PROTEAN_ENV=production``) events are processed
asynchronously. The Engine workers started here publish them to Redis
Streams and run the projectors (daily queue stats) from the streams.

Usage:
    PROTEAN_ENV=production python src/server.py
"""

import asyncio

from protean.server.engine import Engine


async def run():
    from outbound.domain import outbound

    outbound.init()
    await Engine(outbound).run()


def main():
    asyncio.run(run())


if __name__ == "__main__":
    main()
