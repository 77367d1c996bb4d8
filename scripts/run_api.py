#!/usr/bin/env python
"""
FAA Certification RAG - API Server Runner
Serves certrag.api.server:app with uvicorn using API_HOST / API_PORT / DEBUG_MODE
"""

import sys
from pathlib import Path

# Add the project directory to Python path
project_dir = Path(__file__).parent.parent
sys.path.insert(0, str(project_dir))

if __name__ == "__main__":
    import uvicorn
    from dotenv import load_dotenv

    load_dotenv()

    from certrag.core.config import get_settings

    settings = get_settings()
    capabilities = {
        "LLM": bool(settings.llm_api_key),
        "Search index": bool(settings.azure_search_endpoint and settings.azure_search_key),
        "DRS": bool(settings.drs_api_key),
        "Blob/queue storage": settings.has_storage,
    }

    print("=" * 60)
    print("FAA Certification RAG - API")
    for name, configured in capabilities.items():
        print(f"  {name:<20} {'configured' if configured else 'not configured'}")
    print(f"Ask:    POST http://localhost:{settings.api_port}/api/ask")
    print(f"Health: GET  http://localhost:{settings.api_port}/api/health")
    print("=" * 60)

    uvicorn.run(
        "certrag.api.server:app",
        host=settings.api_host,
        port=settings.api_port,
        reload=settings.debug_mode,
    )
