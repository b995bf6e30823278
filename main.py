"""
dnsgeo command-line entry point.
Looks up each address given on the command line and prints where it is.
"""

import argparse
import asyncio
import sys

from loguru import logger

from dnsgeo.services.geo_service import GeoService
from dnsgeo.settings import load_settings


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Resolve IP addresses to locations")
    parser.add_argument("ips", nargs="+", help="IPv4 or IPv6 addresses")
    parser.add_argument(
        "-v", "--verbose", action="store_true", help="Enable debug logging"
    )
    return parser.parse_args(argv)


async def main(argv: list[str] | None = None) -> int:
    """Main function"""
    args = parse_args(argv)

    logger.remove()
    logger.add(sys.stderr, level="DEBUG" if args.verbose else "INFO")

    overrides = {"debug": True} if args.verbose else {}
    settings = load_settings(**overrides)

    async with GeoService(settings) as geo:
        source = geo.get_source()
        logger.info(
            f"Source: {source.city}, {source.country} ({source.lat}, {source.lng})"
        )

        results = await asyncio.gather(*(geo.lookup(ip) for ip in args.ips))

        for ip, location in zip(args.ips, results):
            if location is None:
                print(f"{ip}\tunknown")
            else:
                print(
                    f"{ip}\t{location.city}, {location.country}"
                    f"\t({location.lat}, {location.lng})"
                )

        logger.info(f"Stats: {geo.get_stats().to_dict()}")

    return 0


if __name__ == "__main__":
    sys.exit(asyncio.run(main()))
