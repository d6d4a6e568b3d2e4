"""RAG (Retrieval-Augmented Generation) pipeline components.

This package contains modules for:
- Markdown parsing into documents
- Document chunking with overlap
- Transactional ingestion with concurrent embedding
- Similarity retrieval (full scan or FAISS)
- Query orchestration with generation fallback
"""
