from .loader import DEFAULT_GLOB, load_seed_documents

__all__ = ["DEFAULT_GLOB", "load_seed_documents"]
