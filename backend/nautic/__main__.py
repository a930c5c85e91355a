import argparse
import asyncio
import logging
from typing import List, Optional

from nautic.config import Settings
from nautic.main import ControlServer

logger = logging.getLogger(__name__)


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(prog="nautic-control", description="NauticPlayer control server")
    parser.add_argument("--host", help="address to listen on")
    parser.add_argument("--port", type=int, help="first port to try")
    parser.add_argument("--no-engine", action="store_true", help="do not launch mpv")
    parser.add_argument("--wid", type=int, help="native window handle to embed the engine into")
    parser.add_argument("-v", "--verbose", action="store_true")
    return parser.parse_args(argv)


async def run(args: argparse.Namespace) -> None:
    overrides = {}
    if args.host:
        overrides["host"] = args.host
    if args.port:
        overrides["port"] = args.port
    server = ControlServer(Settings(**overrides))

    if not args.no_engine:
        await server.engine.start(args.wid)
    try:
        await server.serve()
    finally:
        await server.engine.quit()


def main(argv: Optional[List[str]] = None) -> None:
    args = parse_args(argv)
    logging.basicConfig(level=logging.DEBUG if args.verbose else logging.INFO)
    try:
        asyncio.run(run(args))
    except KeyboardInterrupt:
        logger.info("Interrupted, shutting down")


if __name__ == "__main__":
    main()
