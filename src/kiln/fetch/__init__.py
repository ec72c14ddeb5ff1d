"""Source retrieval: verified release downloads and head checkouts."""

from __future__ import annotations

from .http import download, extract_archive, url_filename
from .vcs import HeadCheckout, checkout_head, vcs_url

__all__ = [
    "HeadCheckout",
    "checkout_head",
    "download",
    "extract_archive",
    "url_filename",
    "vcs_url",
]
