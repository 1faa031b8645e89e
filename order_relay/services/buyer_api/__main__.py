"""Module entrypoint for running the buyer API with shared settings."""

import uvicorn

from order_relay.core.config import get_settings


def main() -> int:
    """Run the buyer API using configured host and port."""

    settings = get_settings()
    uvicorn.run(
        "order_relay.services.buyer_api.main:app",
        host=settings.HOST,
        port=settings.BUYER_PORT,
    )
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
