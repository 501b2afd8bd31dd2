"""
Document pipeline package.

Accepts PDFs for asynchronous conversion to Markdown, tracks each
document's processing stage and exposes it for polling through a FastAPI
application (`doc_pipeline.webapi`).
"""

__all__ = ["__version__"]

__version__ = "0.1.0"
