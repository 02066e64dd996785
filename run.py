# run.py
import os
import sys

import uvicorn
from dotenv import load_dotenv

sys.path.append(os.path.dirname(os.path.abspath(__file__)))
load_dotenv(os.path.join(os.path.dirname(os.path.abspath(__file__)), ".env"))

from bedrock_manager.core.config import PORT, HOST

if __name__ == "__main__":
    print(f"===========================================================")
    print(f" BEDROCK SERVER MANAGER STARTING...")
    print(f" Dashboard URL: http://{HOST}:{PORT}")
    print(f"===========================================================")

    # "bedrock_manager:create_app" refers to the create_app factory in bedrock_manager/__init__.py
    uvicorn.run(
        "bedrock_manager:create_app",
        host=HOST,
        port=PORT,
        factory=True,
        log_level=os.getenv("LOG_LEVEL", "info"),
    )
