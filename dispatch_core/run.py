"""
Dispatch Core Runner
"""

import uvicorn
from dispatch_core.core.config import Config


def main():
    """Run the dispatch coordination API server."""
    uvicorn.run(
        "dispatch_core.api.main:app",
        host=Config.HOST,
        port=Config.PORT,
        reload=Config.DEBUG,
        log_level=Config.LOG_LEVEL.lower()
    )


if __name__ == "__main__":
    main()
