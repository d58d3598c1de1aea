"""Register the configured Pesapal IPN URL and print its notification id.

Set `PESAPAL_CONSUMER_KEY`, `PESAPAL_CONSUMER_SECRET` and `PESAPAL_IPN_URL`
first. The printed id can be reused instead of registering on every process
start.
"""

import argparse
import asyncio

from creohub.common.config import settings
from creohub.common.errors import PaymentError
from creohub.services.gateways.pesapal import PesapalClient, PesapalConfig


async def register(ipn_url: str | None, environment: str | None) -> int:
    config = PesapalConfig.from_settings(settings)
    overrides = {}
    if ipn_url:
        overrides["ipn_url"] = ipn_url
    if environment:
        overrides["environment"] = environment
    if overrides:
        config = config.model_copy(update=overrides)

    client = PesapalClient(config)
    try:
        token = await client.authenticate()
        ipn_id = await client.register_ipn(token)
    except PaymentError as exc:
        print(f"Registration failed: {exc}")
        return 1
    finally:
        await client.aclose()
    print(f"ipn_url={config.ipn_url} environment={config.environment} ipn_id={ipn_id}")
    return 0


def main() -> None:
    parser = argparse.ArgumentParser(description="Register a Pesapal IPN URL.")
    parser.add_argument("--ipn-url", default=None, help="Overrides PESAPAL_IPN_URL")
    parser.add_argument("--environment", default=None, choices=["sandbox", "live"])
    args = parser.parse_args()
    raise SystemExit(asyncio.run(register(args.ipn_url, args.environment)))


if __name__ == "__main__":
    main()
