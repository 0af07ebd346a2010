import logging
import os

from dotenv import load_dotenv
from fastapi import FastAPI

from agon_x402.http import fastapi_payment_middleware_from_config

load_dotenv()
logging.basicConfig(level=logging.INFO)

app = FastAPI()

PORT = int(os.getenv("PORT", "3000"))
AGON_URL = os.getenv("AGON_URL", "http://localhost:8080")
PLATFORM_KEY = os.getenv("AGON_PLATFORM_KEY")

if not PLATFORM_KEY:
    raise SystemExit("AGON_PLATFORM_KEY env var is required")

routes = {
    "GET /api/premium-data": {
        "price": "$0.01",
        "description": "Access to premium data endpoint",
        "mime_type": "application/json",
    }
}

middleware = fastapi_payment_middleware_from_config(routes, AGON_URL, PLATFORM_KEY)


@app.middleware("http")
async def agon_middleware(request, call_next):
    return await middleware(request, call_next)


@app.get("/api/premium-data")
async def premium_data():
    return {
        "message": "Success! You've accessed the premium data.",
        "data": {
            "secret": "This is protected content behind a paywall",
        },
    }


@app.get("/")
async def root():
    return {
        "message": "Agon Demo Server",
        "endpoints": {
            "free": ["/", "/health"],
            "protected": [
                {
                    "path": "/api/premium-data",
                    "price": "$0.01",
                    "description": "Premium data endpoint (requires payment)",
                }
            ],
        },
    }


@app.get("/health")
async def health():
    return {"status": "ok"}


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host="0.0.0.0", port=PORT)
