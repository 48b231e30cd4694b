#!/usr/bin/env python3
"""
Production server runner for the QueryStream API.

The default in-memory stores (sessions, usage, query cache) are per
process, so production runs a single worker unless the query cache backend
is redis.
"""

import sys
from pathlib import Path

# Add the src directory to the Python path
project_root = Path(__file__).parent.parent
src_path = project_root / "src"
sys.path.insert(0, str(src_path))

from dotenv import load_dotenv

env_file = project_root / ".env"
if env_file.exists():
    load_dotenv(env_file)
    print(f"✓ Loaded environment variables from {env_file}")
else:
    print(f"⚠ No .env file found at {env_file}")
    print("  Ensure environment variables are set via your deployment system")

if __name__ == "__main__":
    import uvicorn
    from querystream.config import get_settings
    from querystream.config_constants import CacheBackend

    settings = get_settings()
    server_config = settings.server

    workers = server_config.workers
    if settings.cache.backend == CacheBackend.MEMORY and workers > 1:
        print("⚠ In-memory query cache is per process; running a single worker")
        workers = 1

    production_config = {
        "app": server_config.app_module,
        "host": server_config.host,
        "port": server_config.port,
        "workers": workers,
        "reload": False,
        "log_config": None,  # Use our structured logging
        "access_log": False,  # We handle access logging via middleware
        "server_header": False,
        "date_header": False,
        # SSE streams stay open while the pipeline runs
        "timeout_keep_alive": 75,
    }

    print("🚀 Starting QueryStream API production server...")
    print(f"🌐 Listening: {server_config.host}:{server_config.port}")
    print(f"👥 Workers: {workers}")
    print()

    uvicorn.run(**production_config)
