# tests/__init__.py
"""
Expose common test utilities so tests can import directly:
    from tests import FakeFetcher, html_page
"""

from .utils import FakeFetcher, html_page

__all__ = ["FakeFetcher", "html_page"]
