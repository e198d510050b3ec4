import asyncio
import sys

from pingwatch.main import main


def run() -> None:
    sys.exit(asyncio.run(main()))


if __name__ == "__main__":
    run()
