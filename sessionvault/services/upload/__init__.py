"""
Upload module - Local-first background upload pipeline.
"""

from sessionvault.services.upload.connectivity import ConnectivityWatcher
from sessionvault.services.upload.queue import UploadQueue

__all__ = ["ConnectivityWatcher", "UploadQueue"]
