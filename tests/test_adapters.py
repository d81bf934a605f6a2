"""
Tests for source adapters.

Network and git are mocked; documents are generated under tmp_path.
"""

import asyncio
import io
import subprocess
from unittest.mock import Mock, patch

import docx
import pytest
from pypdf import PdfWriter

from ragvault.rag.adapters import (
    DocumentAdapter,
    GitDiffAdapter,
    GitHubClient,
    GitHubIssueAdapter,
    GitHubPullRequestAdapter,
    ImageAdapter,
    NoteAdapter,
    RepositoryCodeAdapter,
    VoiceTranscriptAdapter,
    WebAdapter,
    canonical_repo_url,
    parse_repo_url,
)
from ragvault.rag.adapters.base import detect_language, extract_title
from ragvault.rag.adapters.repository import run_git
from ragvault.rag.adapters.web import html_to_text
from ragvault.rag.errors import AdapterError, InvalidArgument
from ragvault.rag.models import IngestionSource, SourceType


def extract(adapter, source):
    return asyncio.run(adapter.extract(source))


def http_response(status_code=200, text="", json_data=None, headers=None):
    response = Mock()
    response.status_code = status_code
    response.text = text
    response.headers = headers or {}
    response.json.return_value = json_data
    return response


class TestDocumentAdapter:
    """Tests for file-based documents."""

    def setup_method(self):
        self.adapter = DocumentAdapter()

    def test_markdown(self, tmp_path):
        path = tmp_path / "design.md"
        path.write_text("# Design Notes\n\nThe index is rebuilt from the store on start.\n")

        [item] = extract(self.adapter, IngestionSource(SourceType.DOCUMENT, str(path), tags=["design"]))

        assert item.source_type == SourceType.DOCUMENT
        assert item.content.startswith("# Design Notes")
        assert item.metadata.title == "Design Notes"
        assert item.metadata.source_path == str(path.resolve())
        assert item.metadata.mime_type == "text/markdown"
        assert item.metadata.language == "en"
        assert item.metadata.tags == ["design"]
        assert item.metadata.extra["fileName"] == "design.md"
        assert item.metadata.extra["wordCount"] == 12

    def test_html_file(self, tmp_path):
        path = tmp_path / "page.html"
        path.write_text(
            "<html><head><title>Runbook</title><style>p{}</style></head>"
            "<body><h1>Restart</h1><script>alert(1)</script><p>Drain the node first.</p></body></html>"
        )

        [item] = extract(self.adapter, IngestionSource(SourceType.DOCUMENT, str(path)))

        assert item.metadata.title == "Runbook"
        assert item.content == "Restart\nDrain the node first."

    def test_docx(self, tmp_path):
        path = tmp_path / "report.docx"
        document = docx.Document()
        document.add_paragraph("Quarterly Report")
        document.add_paragraph("Revenue grew in every region.")
        table = document.add_table(rows=1, cols=2)
        table.cell(0, 0).text = "EMEA"
        table.cell(0, 1).text = "12%"
        document.save(str(path))

        [item] = extract(self.adapter, IngestionSource(SourceType.DOCUMENT, str(path)))

        assert item.metadata.title == "Quarterly Report"
        assert "Revenue grew in every region." in item.content
        assert "EMEA | 12%" in item.content

    def test_pdf_from_bytes(self):
        writer = PdfWriter()
        writer.add_blank_page(width=72, height=72)
        buffer = io.BytesIO()
        writer.write(buffer)

        source = IngestionSource(SourceType.DOCUMENT, "scan.pdf", content=buffer.getvalue())
        [item] = extract(self.adapter, source)

        assert item.content == ""
        assert item.metadata.source_path == "scan.pdf"
        assert item.metadata.extra["pageCount"] == 1

    def test_unsupported_extension(self, tmp_path):
        path = tmp_path / "tool.exe"
        path.write_bytes(b"MZ")
        with pytest.raises(AdapterError):
            extract(self.adapter, IngestionSource(SourceType.DOCUMENT, str(path)))

    def test_missing_file(self, tmp_path):
        with pytest.raises(AdapterError) as exc_info:
            extract(self.adapter, IngestionSource(SourceType.DOCUMENT, str(tmp_path / "gone.md")))
        assert exc_info.value.source == str(tmp_path / "gone.md")

    def test_file_too_large(self, tmp_path):
        path = tmp_path / "big.txt"
        path.write_text("x" * 100)
        with pytest.raises(AdapterError):
            extract(DocumentAdapter(max_file_size=10), IngestionSource(SourceType.DOCUMENT, str(path)))

    def test_caller_metadata_lands_in_extra(self, tmp_path):
        path = tmp_path / "a.txt"
        path.write_text("hello")
        source = IngestionSource(SourceType.DOCUMENT, str(path), metadata={"project": "x", "fileName": "spoof"})

        [item] = extract(self.adapter, source)

        assert item.metadata.extra["project"] == "x"
        assert item.metadata.extra["fileName"] == "a.txt"


class TestWebAdapter:
    """Tests for web pages."""

    PAGE = (
        "<html><head><title> Release notes </title></head><body>"
        "<nav>Home</nav><!-- tracking --><div><p>Version 2 ships the new index.</p>"
        "<noscript>enable js</noscript></div></body></html>"
    )

    def test_html_to_text(self):
        title, text = html_to_text(self.PAGE)
        assert title == "Release notes"
        assert text == "Home\nVersion 2 ships the new index."

    @patch("ragvault.rag.adapters.web.requests.get")
    def test_fetch(self, mock_get):
        mock_get.return_value = http_response(text=self.PAGE, headers={"Content-Type": "text/html; charset=utf-8"})
        adapter = WebAdapter(timeout=5)

        [item] = extract(adapter, IngestionSource(SourceType.WEB, "https://example.com/releases"))

        assert item.metadata.title == "Release notes"
        assert item.metadata.source_path == "https://example.com/releases"
        assert item.metadata.mime_type == "text/html"
        assert "new index" in item.content
        assert adapter.requests_made == 1
        assert mock_get.call_args.kwargs["timeout"] == 5

    @patch("ragvault.rag.adapters.web.requests.get")
    def test_plain_text_response(self, mock_get):
        mock_get.return_value = http_response(text="just text\r\n", headers={"Content-Type": "text/plain"})

        [item] = extract(WebAdapter(), IngestionSource(SourceType.WEB, "https://example.com/a.txt"))

        assert item.content == "just text"
        assert item.metadata.title == "https://example.com/a.txt"

    @patch("ragvault.rag.adapters.web.requests.get")
    def test_http_error(self, mock_get):
        mock_get.return_value = http_response(status_code=500, text="oops")
        with pytest.raises(AdapterError):
            extract(WebAdapter(), IngestionSource(SourceType.WEB, "https://example.com"))

    @patch("ragvault.rag.adapters.web.requests.get")
    def test_network_error_is_wrapped(self, mock_get):
        import requests
        mock_get.side_effect = requests.ConnectionError("refused")

        with pytest.raises(AdapterError) as exc_info:
            extract(WebAdapter(), IngestionSource(SourceType.WEB, "https://example.com"))
        assert isinstance(exc_info.value.cause, requests.ConnectionError)

    def test_rejects_non_http(self):
        with pytest.raises(AdapterError):
            extract(WebAdapter(), IngestionSource(SourceType.WEB, "ftp://example.com"))


class TestTextAdapters:
    """Tests for notes, transcripts and images."""

    def test_note(self):
        source = IngestionSource(SourceType.NOTE, "note-42", content="Call the vendor\nabout renewal")
        [item] = extract(NoteAdapter(), source)

        assert item.metadata.source_path == "note-42"
        assert item.metadata.title == "Call the vendor"
        assert item.metadata.extra["wordCount"] == 5

    def test_note_requires_content(self):
        with pytest.raises(AdapterError):
            extract(NoteAdapter(), IngestionSource(SourceType.NOTE, "note-1"))

    def test_vtt_transcript(self):
        vtt = (
            "WEBVTT\n\n"
            "1\n00:00:01.000 --> 00:00:04.500\nHello team\n\n"
            "2\n00:00:05.000 --> 00:01:02.250\n<v Bob>Standup notes</v>\n"
        )
        [item] = extract(VoiceTranscriptAdapter(), IngestionSource(SourceType.VOICE, "voice-1", content=vtt))

        assert item.content == "Hello team\n\nStandup notes"
        assert item.metadata.extra["duration"] == pytest.approx(62.25)
        assert item.metadata.extra["format"] == "vtt"

    def test_srt_file(self, tmp_path):
        path = tmp_path / "call.srt"
        path.write_text("1\n00:00:01,000 --> 00:00:02,000\nFirst line\n\n2\n00:00:02,500 --> 00:00:03,000\nSecond line\n")

        [item] = extract(VoiceTranscriptAdapter(), IngestionSource(SourceType.VOICE, str(path)))

        assert item.content == "First line\n\nSecond line"
        assert item.metadata.source_path == str(path.resolve())
        assert item.metadata.extra["duration"] == pytest.approx(3.0)

    def test_image(self):
        source = IngestionSource(
            SourceType.IMAGE,
            "uploads/whiteboard.png",
            metadata={"description": "Architecture sketch", "ocrText": "API -> queue", "width": 800, "height": 600},
        )
        [item] = extract(ImageAdapter(), source)

        assert item.content == "Description: Architecture sketch\n\nText in image: API -> queue"
        assert item.metadata.title == "whiteboard.png"
        assert item.metadata.extra["width"] == 800
        assert item.metadata.extra["hasOcr"] is True
        assert "ocrText" not in item.metadata.extra

    def test_image_without_text(self):
        with pytest.raises(AdapterError):
            extract(ImageAdapter(), IngestionSource(SourceType.IMAGE, "blank.png"))


class TestHelpers:
    def test_parse_repo_url(self):
        assert parse_repo_url("https://github.com/acme/app") == ("acme", "app")
        assert parse_repo_url("https://github.com/acme/app.git") == ("acme", "app")
        assert parse_repo_url("git@github.com:acme/app.git") == ("acme", "app")
        assert parse_repo_url("acme/app") == ("acme", "app")
        assert canonical_repo_url("git@github.com:acme/app.git") == "https://github.com/acme/app"

    def test_parse_repo_url_rejects_garbage(self):
        for value in ("", "not a repo", "https://gitlab.com/acme"):
            with pytest.raises(InvalidArgument):
                parse_repo_url(value)

    def test_extract_title(self):
        assert extract_title("intro\n## Heading two\n", "x") == "Heading two"
        assert extract_title("First line\nsecond", "x") == "First line"
        assert extract_title("y" * 200, "fallback") == "fallback"

    def test_detect_language(self):
        assert detect_language("The cat is on the mat and that is fine") == "en"
        assert detect_language("Der Hund und die Katze ist nicht da") == "de"
        assert detect_language("12345") == "unknown"


class TestRepositoryCodeAdapter:
    """Tests for local working trees (no git needed)."""

    def test_local_directory(self, tmp_path):
        root = tmp_path / "proj"
        (root / "src").mkdir(parents=True)
        (root / "src" / "main.py").write_text("def main():\n    return 1\n")
        (root / "README.md").write_text("# Project\n")
        (root / "src" / "empty.py").write_text("   \n")
        (root / "blob.py").write_bytes(b"\x00\x01binary")
        (root / "huge.py").write_text("x = 1\n" * 500)
        (root / "node_modules" / "lib").mkdir(parents=True)
        (root / "node_modules" / "lib" / "index.js").write_text("module.exports = 1")
        (root / "photo.png").write_bytes(b"\x89PNG")

        adapter = RepositoryCodeAdapter(max_file_size=1000)
        items = extract(adapter, IngestionSource(SourceType.REPO_CODE, str(root)))

        assert [i.metadata.file_path for i in items] == ["README.md", "src/main.py"]
        main = items[1]
        assert main.source_path == f"{root.resolve()}/src/main.py"
        assert main.metadata.repo_url == str(root.resolve())
        assert main.metadata.language == "python"
        assert main.metadata.commit_hash is None
        assert main.metadata.extra["repository"] == "proj"

    def test_stale_scope_targets_missing_files(self, tmp_path):
        root = tmp_path / "proj"
        root.mkdir()
        (root / "kept.py").write_text("x = 1\n")
        adapter = RepositoryCodeAdapter()
        source = IngestionSource(SourceType.REPO_CODE, str(root))
        items = extract(adapter, source)

        predicate = adapter.stale_scope(source, items)
        stale = Mock(source_type=SourceType.REPO_CODE)
        stale.metadata.repo_url = str(root.resolve())
        stale.metadata.source_path = f"{root.resolve()}/deleted.py"
        current = Mock(source_type=SourceType.REPO_CODE)
        current.metadata.repo_url = str(root.resolve())
        current.metadata.source_path = items[0].source_path

        assert predicate(stale) is True
        assert predicate(current) is False
        assert adapter.stale_scope(source, []) is None

    @patch("ragvault.rag.adapters.repository.subprocess.run")
    def test_run_git_missing_binary(self, mock_run):
        mock_run.side_effect = FileNotFoundError("git")
        with pytest.raises(AdapterError):
            run_git(["status"])

    @patch("ragvault.rag.adapters.repository.subprocess.run")
    def test_run_git_nonzero_exit(self, mock_run):
        mock_run.return_value = subprocess.CompletedProcess(["git", "status"], 128, "", "fatal: not a git repository")
        with pytest.raises(AdapterError) as exc_info:
            run_git(["status"])
        assert "not a git repository" in str(exc_info.value)


class TestGitHubClient:
    """Tests for the REST client."""

    @patch("ragvault.rag.adapters.repository.requests.get")
    def test_not_found(self, mock_get):
        mock_get.return_value = http_response(status_code=404)
        with pytest.raises(AdapterError):
            GitHubClient().get("/repos/acme/missing")

    @patch("ragvault.rag.adapters.repository.requests.get")
    def test_rate_limited(self, mock_get):
        mock_get.return_value = http_response(status_code=403, headers={"X-RateLimit-Remaining": "0"})
        with pytest.raises(AdapterError) as exc_info:
            GitHubClient().get("/repos/acme/app/issues")
        assert "rate limit" in str(exc_info.value)

    @patch("ragvault.rag.adapters.repository.requests.get")
    def test_sends_token(self, mock_get):
        mock_get.return_value = http_response(json_data={})
        GitHubClient(token="secret").get("/repos/acme/app")
        assert mock_get.call_args.kwargs["headers"]["Authorization"] == "Bearer secret"

    @patch("ragvault.rag.adapters.repository.requests.get")
    def test_paginate_until_short_page(self, mock_get):
        mock_get.side_effect = [
            http_response(json_data=[{"n": i} for i in range(100)]),
            http_response(json_data=[{"n": i} for i in range(5)]),
        ]
        items = GitHubClient().paginate("/repos/acme/app/issues")

        assert len(items) == 105
        assert mock_get.call_args_list[1].kwargs["params"]["page"] == 2

    @patch("ragvault.rag.adapters.repository.requests.get")
    def test_paginate_respects_max_items(self, mock_get):
        mock_get.return_value = http_response(json_data=[{"n": i} for i in range(100)])
        items = GitHubClient(max_items=150).paginate("/repos/acme/app/issues")

        assert len(items) == 150
        assert mock_get.call_count == 2


ISSUE = {
    "number": 12,
    "title": "Search returns stale results",
    "body": "After re-ingesting, old chunks still show up.",
    "state": "open",
    "html_url": "https://github.com/acme/app/issues/12",
    "labels": [{"name": "bug"}, {"name": "search"}],
    "user": {"login": "octo"},
    "created_at": "2024-05-01T10:00:00Z",
}

PULL = {
    "number": 13,
    "title": "Fix stale results",
    "body": "Replaces chunks per source.",
    "state": "closed",
    "merged_at": "2024-05-02T10:00:00Z",
    "html_url": "https://github.com/acme/app/pull/13",
    "labels": [],
    "head": {"ref": "fix-stale", "sha": "abc123"},
    "base": {"ref": "main"},
    "user": {"login": "octo"},
}


class TestGitHubAdapters:
    """Tests for issue, pull request and diff adapters."""

    def setup_method(self):
        self.client = Mock()

    def test_issues_skip_pull_requests(self):
        self.client.paginate.return_value = [ISSUE, dict(PULL, pull_request={"url": "..."})]
        adapter = GitHubIssueAdapter(self.client)

        items = extract(adapter, IngestionSource(SourceType.REPO_ISSUE, "acme/app"))

        assert len(items) == 1
        issue = items[0]
        assert issue.content.startswith("# Issue #12: Search returns stale results\nLabels: bug, search")
        assert issue.metadata.source_path == "https://github.com/acme/app/issues/12"
        assert issue.metadata.repo_url == "https://github.com/acme/app"
        assert issue.metadata.tags == ["bug", "search"]
        assert issue.metadata.extra["author"] == "octo"
        self.client.paginate.assert_called_once_with("/repos/acme/app/issues", {"state": "all"})

    def test_single_issue(self):
        self.client.get.return_value.json.return_value = ISSUE
        adapter = GitHubIssueAdapter(self.client)
        source = IngestionSource(SourceType.REPO_ISSUE, "https://github.com/acme/app", metadata={"issueNumber": 12})

        items = extract(adapter, source)

        assert len(items) == 1
        self.client.get.assert_called_once_with("/repos/acme/app/issues/12")
        assert adapter.stale_scope(source, items) is None

    def test_pull_requests(self):
        self.client.paginate.return_value = [PULL]
        [item] = extract(GitHubPullRequestAdapter(self.client), IngestionSource(SourceType.REPO_PR, "acme/app"))

        assert item.metadata.title == "PR #13 Fix stale results"
        assert item.metadata.commit_hash == "abc123"
        assert item.metadata.extra["state"] == "merged"
        assert item.content.endswith("Branch: fix-stale -> main")

    def test_inline_pull_request_diff(self):
        source = IngestionSource(
            SourceType.REPO_DIFF,
            "acme/app",
            content="diff --git a/x.py b/x.py\r\n+print('hi')\r\n",
            metadata={"pullNumber": 7},
        )
        [item] = extract(GitDiffAdapter(self.client), source)

        assert item.source_path == "https://github.com/acme/app/pull/7.diff"
        assert item.content == "diff --git a/x.py b/x.py\n+print('hi')"
        assert item.metadata.extra["prNumber"] == 7
        self.client.get.assert_not_called()

    def test_fetched_pull_request_diff(self):
        self.client.get.return_value.text = "diff --git a/y b/y\n-old\n+new\n"
        source = IngestionSource(SourceType.REPO_DIFF, "acme/app", metadata={"prNumber": "9"})

        [item] = extract(GitDiffAdapter(self.client), source)

        assert item.content.endswith("+new")
        self.client.get.assert_called_once_with("/repos/acme/app/pulls/9", accept="application/vnd.github.diff")

    def test_inline_commit_diff(self):
        source = IngestionSource(SourceType.REPO_DIFF, "acme/app", content="-a\n+b", metadata={"commit": "deadbeefcafe1234"})
        [item] = extract(GitDiffAdapter(self.client), source)

        assert item.source_path == "https://github.com/acme/app/commit/deadbeefcafe1234"
        assert item.metadata.commit_hash == "deadbeefcafe1234"
        assert item.metadata.title == "Commit deadbeefcafe"

    def test_diff_needs_pull_or_commit(self):
        with pytest.raises(AdapterError):
            extract(GitDiffAdapter(self.client), IngestionSource(SourceType.REPO_DIFF, "acme/app", content="x"))
