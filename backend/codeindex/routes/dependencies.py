"""
FastAPI dependencies shared by the routers.
"""

from codeindex.services.index_manager import IndexManagerRegistry, index_registry


def get_registry() -> IndexManagerRegistry:
    """Process-wide manager registry. Tests override this dependency."""
    return index_registry
