import asyncio
import signal

from loguru import logger

from .app import create_app


async def _serve() -> None:
    app = create_app()
    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for signum in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(signum, stop.set)

    async with app.lifespan():
        logger.info("Loyalty engine running", scheduler=app.settings.job_scheduler_enabled)
        await stop.wait()


def main() -> None:
    asyncio.run(_serve())


if __name__ == "__main__":
    main()
