#!/usr/bin/env python
"""Local development script for running insight."""
import os
import uvicorn


# Set environment variables for local development
for key, value in {
    "DEBUG": "true",
    "HOST": "127.0.0.1",
    "PORT": "8080",
    "DATABASE_URL": "sqlite+aiosqlite:///./insight-dev.db",
    "API_KEY": "insight-local-dev-key",
    "JWT_SECRET": "insight-local-dev-signing-secret-0123456789",
}.items():
    os.environ.setdefault(key, value)


if __name__ == "__main__":
    print("Starting insight in development mode")
    print(f"API: http://{os.environ['HOST']}:{os.environ['PORT']}")
    print(f"Docs: http://{os.environ['HOST']}:{os.environ['PORT']}/docs")
    print(f"API key: {os.environ['API_KEY']}")

    # Run with auto-reload
    uvicorn.run("main:app", host=os.environ["HOST"], port=int(os.environ["PORT"]), reload=True)
