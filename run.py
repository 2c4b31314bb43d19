"""
Trashcan Relay — Standalone Server

Boots the relay from a single Python command:
  python run.py

Starts:
  - FastAPI app (REST + /ws dashboard channel)
  - MQTT bus client (reconnects in the background)
  - SQLite detection store under ./data

Usage:
  pip install -e .
  MQTT_BROKER_URL=mqtt://broker.local:1883 JWT_SECRET=... python run.py
"""
import os
import sys

# Set working directory
project_root = os.path.dirname(os.path.abspath(__file__))
os.chdir(project_root)

# Add service path
sys.path.insert(0, os.path.join(project_root, "services", "relay"))

if __name__ == "__main__":
    import uvicorn
    from config import settings

    print("=" * 60)
    print("  TRASHCAN RELAY — MQTT ↔ WebSocket bridge")
    print("=" * 60)
    print(f"  API:      http://localhost:{settings.APP_PORT}/docs")
    print(f"  Socket:   ws://localhost:{settings.APP_PORT}/ws")
    print(f"  Health:   http://localhost:{settings.APP_PORT}/health")
    print(f"  Metrics:  http://localhost:{settings.APP_PORT}/metrics")
    print(f"  Broker:   {settings.MQTT_BROKER_URL}")
    print("=" * 60)

    uvicorn.run(
        "main:app",
        host=settings.APP_HOST,
        port=settings.APP_PORT,
        reload=settings.APP_DEBUG,
        reload_dirs=[os.path.join(project_root, "services", "relay")],
    )
