import asyncio
import logging
import os

from dotenv import load_dotenv

from agon_x402 import AgonClient, LimitExceededDetails, USDC_DECIMALS

load_dotenv()
logging.basicConfig(level=logging.INFO)

API_URL = os.getenv("API_URL", "http://localhost:3000")
ENDPOINT = f"{API_URL}/api/premium-data"
AUTO_APPROVE_UNDER = 5 * 10**USDC_DECIMALS


def approve_small_overrides(details: LimitExceededDetails) -> str:
    if details.requested is not None and details.requested < AUTO_APPROVE_UNDER:
        return "approve"
    return "reject"


async def main() -> None:
    async with AgonClient.from_env(on_limit_exceeded=approve_small_overrides) as client:
        if client.api_key is None:
            account = await client.register()
            print("Registered account", account.account_id, "deposit to", account.deposit_address)

        response = await client.fetch(ENDPOINT)
        print("Status:", response.status_code)
        print("Body:", response.text)

        proxied = response.extensions.get("agon_proxy")
        if proxied is not None:
            print("Paid via proxy:", proxied.amount_charged, "units, tx", proxied.tx_signature)


if __name__ == "__main__":
    asyncio.run(main())
