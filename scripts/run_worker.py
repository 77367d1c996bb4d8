#!/usr/bin/env python
"""
FAA Certification RAG - Index Worker Runner
Consumes the index queue until interrupted
"""

import asyncio
import os
import sys
from pathlib import Path

# Add the project directory to Python path
project_dir = Path(__file__).parent.parent
sys.path.insert(0, str(project_dir))

if __name__ == "__main__":
    from dotenv import load_dotenv
    load_dotenv()

    from certrag.api.worker import run_worker

    print("=" * 60)
    print("FAA Certification RAG - Index Worker")
    print(f"Queue: {os.getenv('INDEX_QUEUE_NAME', 'index-queue')}")
    print("=" * 60)

    try:
        asyncio.run(run_worker())
    except KeyboardInterrupt:
        print("\nWorker stopped")
