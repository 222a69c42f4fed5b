"""Spider contract, HTTP base class and bundled example spiders."""

from .base import DEFAULT_USER_AGENT, HttpSpider, Spider
from .blog import BlogSpider

__all__ = ["BlogSpider", "DEFAULT_USER_AGENT", "HttpSpider", "Spider"]
