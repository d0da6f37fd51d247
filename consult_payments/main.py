"""
Consultation Payments - Main Application
Holds, captures and releases consultation payments
"""

import logging
import os

from dotenv import load_dotenv

# Load environment variables FIRST before importing modules that need them
load_dotenv()

from .startup_validation import validate_environment  # noqa: E402
from .utils.logging_config import configure_logging  # noqa: E402

configure_logging()
logger = logging.getLogger(__name__)

if not validate_environment():
    logger.warning(
        "Environment validation failed - payment operations may not work. "
        "See logs above for details."
    )

from .app_factory import create_app  # noqa: E402

app = create_app()

__all__ = ['app']

if __name__ == "__main__":
    import uvicorn
    port = int(os.environ.get("PORT", 8080))
    logger.info(f"Starting server on port {port}")
    uvicorn.run(app, host="0.0.0.0", port=port)
