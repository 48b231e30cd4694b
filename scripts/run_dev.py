#!/usr/bin/env python3
"""
Development server runner for the QueryStream API.

Starts uvicorn with hot reloading after loading .env from the project root.
Settings use nested env names, e.g. LLM__OPENROUTER_API_KEY,
CACHE__BACKEND=redis, ACCOUNTS__SEED_FILE=./accounts.json.
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
    print("  LLM__OPENROUTER_API_KEY must be set in the environment")

if __name__ == "__main__":
    import uvicorn
    from querystream.config import get_settings

    settings = get_settings()
    server_config = settings.server
    base_url = f"http://{server_config.host}:{server_config.port}"

    print("🚀 Starting QueryStream API development server...")
    print(f"📊 API Documentation: {base_url}/docs")
    print(f"💬 Chat stream: POST {base_url}/api/v1/chat/stream")
    print(f"🗄️  Query cache backend: {settings.cache.backend.value}")
    print()

    uvicorn.run(
        server_config.app_module,
        host=server_config.host,
        port=server_config.port,
        reload=server_config.reload,
        reload_dirs=[str(src_path)],
        log_config=None,  # Use our structured logging
        access_log=False  # We handle access logging via middleware
    )
