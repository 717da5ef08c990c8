# server.py
import sys

import uvicorn
from dotenv import load_dotenv

from common.api_error import ConfigurationError
from common.config import initialize_config, get_config
from main import create_app

load_dotenv()
try:
    initialize_config()
except ConfigurationError as e:
    # Can't use logger yet, but that's OK - this is a fatal startup error
    print(f"FATAL: Configuration error:\n{e}")
    sys.exit(1)

config = get_config()
app = create_app(config)

if __name__ == "__main__":
    uvicorn.run(
        "server:app",  # Points to the app instance
        host="0.0.0.0",
        port=8080,
        reload=config.environment.is_development,
        log_level=config.logging.level_value.lower(),
    )
