"""
Entrypoint for running the settlement API under uvicorn.
"""
import os

import uvicorn

from giftpool.main import app

if __name__ == "__main__":
    uvicorn.run(app, host="0.0.0.0", port=int(os.getenv("PORT", "8000")))
