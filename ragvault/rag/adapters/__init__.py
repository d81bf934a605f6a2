"""
ragvault Source Adapters
========================

One adapter per SourceType; ``build_default_adapters`` wires them from settings.
"""

from typing import Dict

from ..models import SourceType
from .base import ExtractedContent, SourceAdapter, parse_repo_url, canonical_repo_url
from .documents import DocumentAdapter
from .notes import ImageAdapter, NoteAdapter, VoiceTranscriptAdapter
from .repository import (
    GitDiffAdapter,
    GitHubClient,
    GitHubIssueAdapter,
    GitHubPullRequestAdapter,
    RepositoryCheckout,
    RepositoryCodeAdapter,
)
from .web import WebAdapter


def build_default_adapters(sources) -> Dict[SourceType, SourceAdapter]:
    """
    Adapter registry for a SourcesConfig.

    Args:
        sources: SourcesConfig section of Settings
    """
    checkout = RepositoryCheckout(
        clone_dir=sources.clone_dir,
        branch=sources.clone_branch,
        token=sources.github_token,
        timeout=sources.git_timeout,
    )
    github = GitHubClient(
        token=sources.github_token,
        api_url=sources.github_api_url,
        timeout=sources.http_timeout,
        user_agent=sources.http_user_agent,
        max_items=sources.github_max_items,
    )

    return {
        SourceType.DOCUMENT: DocumentAdapter(max_file_size=sources.max_document_size),
        SourceType.WEB: WebAdapter(timeout=sources.http_timeout, user_agent=sources.http_user_agent),
        SourceType.REPO_CODE: RepositoryCodeAdapter(
            checkout=checkout,
            max_file_size=sources.max_repo_file_size,
            exclude_paths=sources.exclude_paths,
        ),
        SourceType.REPO_ISSUE: GitHubIssueAdapter(github),
        SourceType.REPO_PR: GitHubPullRequestAdapter(github),
        SourceType.REPO_DIFF: GitDiffAdapter(github, checkout),
        SourceType.NOTE: NoteAdapter(),
        SourceType.VOICE: VoiceTranscriptAdapter(),
        SourceType.IMAGE: ImageAdapter(),
    }


__all__ = [
    "ExtractedContent",
    "SourceAdapter",
    "parse_repo_url",
    "canonical_repo_url",
    "DocumentAdapter",
    "WebAdapter",
    "RepositoryCodeAdapter",
    "RepositoryCheckout",
    "GitHubClient",
    "GitHubIssueAdapter",
    "GitHubPullRequestAdapter",
    "GitDiffAdapter",
    "NoteAdapter",
    "VoiceTranscriptAdapter",
    "ImageAdapter",
    "build_default_adapters",
]
