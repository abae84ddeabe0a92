#!/usr/bin/env python3
"""
run.py — Launch verse-relay without installing.

Usage (from the verse-relay directory):
    python run.py start
    python run.py start --connections connections.yaml
    python run.py init-config
    python run.py check --url ws://localhost:4455 --password secret
    python run.py send-verse "John 3:16" "For God so loved the world..."
"""
import sys
from pathlib import Path

# Ensure the project root is on the path
sys.path.insert(0, str(Path(__file__).parent))

from verse_relay.main import app

if __name__ == "__main__":
    app()
