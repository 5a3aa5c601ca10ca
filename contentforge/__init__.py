"""ContentForge: retrieval-grounded content pipeline.

Blog ideas flow through stage agents (architect -> scribe) that retrieve
supporting chunks from a pgvector store, prompt an LLM, and hand off to the
next stage as persisted pipeline tasks. A FastAPI app exposes retrieval,
generation and pipeline control routes.
"""
