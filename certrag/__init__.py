"""
FAA Certification RAG - Application Package

Retrieval-augmented question answering over FAA aircraft-certification
material with the following modules:

- certrag.api: FastAPI server and background index worker
- certrag.rag: retrieval, routing, caching and indexing components
- certrag.core: configuration, logging and schemas
"""

__version__ = "1.0.0"
