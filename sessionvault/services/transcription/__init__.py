"""
Transcription module - Tracking of remote transcription jobs.
"""

from sessionvault.services.transcription.recovery import TranscriptionRecovery

__all__ = ["TranscriptionRecovery"]
