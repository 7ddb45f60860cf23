"""Attachment resolution and retrieval services."""

from chatmedia.services.chat_store import ChatStore
from chatmedia.services.descriptor import AttachmentDescriptor, CandidateSource, normalize_attachment
from chatmedia.services.exceptions import MediaPipelineError, PipelineFatalError
from chatmedia.services.fetcher import AuthenticatedFetcher
from chatmedia.services.google_auth import AuthContext
from chatmedia.services.orchestrator import BatchOrchestrator, RunSummary, build_orchestrator
from chatmedia.services.strategies import ResolutionChain
from chatmedia.services.tracker import DownloadOutcome, DownloadStateTracker

__all__ = [
    "AttachmentDescriptor",
    "AuthContext",
    "AuthenticatedFetcher",
    "BatchOrchestrator",
    "CandidateSource",
    "ChatStore",
    "DownloadOutcome",
    "DownloadStateTracker",
    "MediaPipelineError",
    "PipelineFatalError",
    "ResolutionChain",
    "RunSummary",
    "build_orchestrator",
    "normalize_attachment",
]
