"""Unit tests for CLI argument handling."""

import pytest

from mail_sync.cli import _build_parser, _parse_attachments, _read_html


class TestCli:
    """Parser and argument helpers."""

    def test_reply_arguments(self) -> None:
        args = _build_parser().parse_args(
            [
                "--user",
                "u1",
                "reply",
                "t1",
                "--to",
                "bob@example.com",
                "--to",
                "carol@example.com",
                "--html",
                "<p>Hi</p>",
                "--attach",
                "/users/u1/a.pdf,a.pdf,application/pdf",
            ]
        )

        assert args.user == "u1"
        assert args.command == "reply"
        assert args.thread_id == "t1"
        assert args.to == ["bob@example.com", "carol@example.com"]
        assert args.attach == ["/users/u1/a.pdf,a.pdf,application/pdf"]

    def test_command_required(self) -> None:
        with pytest.raises(SystemExit):
            _build_parser().parse_args([])

    def test_parse_attachments_keeps_incomplete_entries(self) -> None:
        attachments = _parse_attachments(["/a.pdf,a.pdf,application/pdf", "/b.pdf"])

        assert attachments[0].is_complete is True
        assert attachments[1].url == "/b.pdf"
        assert attachments[1].filename is None

    def test_read_html_from_file(self, tmp_path) -> None:
        body = tmp_path / "body.html"
        body.write_text("<p>From file</p>", encoding="utf-8")

        assert _read_html(f"@{body}") == "<p>From file</p>"
        assert _read_html("<p>inline</p>") == "<p>inline</p>"
