"""Allow running the service with `python -m scriptqueue`."""

import asyncio

from scriptqueue.main import main


def run() -> None:
    asyncio.run(main())


if __name__ == "__main__":
    run()
