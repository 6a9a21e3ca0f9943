#!/usr/bin/env python3
"""Starts the container sweep worker. Extra arguments go straight to celery."""
import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).parent))

from dotenv import load_dotenv
load_dotenv(Path(__file__).parent / ".env")

from app.workers.celery_app import celery_app

DEFAULT_ARGS = ["worker", "--beat", "-Q", "default,mobile_containers", "--loglevel", "INFO"]

if __name__ == "__main__":
    celery_app.start(argv=sys.argv[1:] or DEFAULT_ARGS)
