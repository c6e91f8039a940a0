"""Tests for plant-care search URLs and launchers."""

from __future__ import annotations

import webbrowser
from unittest.mock import MagicMock, patch

import pytest

from plantid.search import NullLauncher, WebBrowserLauncher, build_search_url


class TestBuildSearchUrl:
    def test_spaces_become_plus(self) -> None:
        assert build_search_url("Rose Plant") == "https://www.google.com/search?q=Rose+Plant+plant+care"

    def test_single_word(self) -> None:
        assert build_search_url("Monstera") == "https://www.google.com/search?q=Monstera+plant+care"

    def test_custom_domain_and_suffix(self) -> None:
        url = build_search_url("Aloe vera", domain="duckduckgo.com", suffix="care guide")
        assert url == "https://duckduckgo.com/search?q=Aloe+vera+care+guide"

    def test_reserved_characters_are_encoded(self) -> None:
        url = build_search_url("Rose & Tulip")
        assert url == "https://www.google.com/search?q=Rose+%26+Tulip+plant+care"

    def test_empty_suffix_is_dropped(self) -> None:
        assert build_search_url("Fern", suffix="") == "https://www.google.com/search?q=Fern"


class TestLaunchers:
    @patch("plantid.search.webbrowser.open")
    def test_web_browser_launcher_opens_url(self, mock_open: MagicMock) -> None:
        mock_open.return_value = True
        assert WebBrowserLauncher().open("https://example.com") is True
        mock_open.assert_called_once_with("https://example.com", new=2)

    @patch("plantid.search.webbrowser.open")
    def test_web_browser_launcher_reports_missing_browser(self, mock_open: MagicMock) -> None:
        mock_open.return_value = False
        assert WebBrowserLauncher().open("https://example.com") is False

    @patch("plantid.search.webbrowser.open")
    def test_web_browser_launcher_logs_errors(self, mock_open: MagicMock, caplog: pytest.LogCaptureFixture) -> None:
        mock_open.side_effect = webbrowser.Error("no runnable browser")
        assert WebBrowserLauncher().open("https://example.com") is False
        assert "Could not open browser" in caplog.text

    def test_null_launcher_never_opens(self) -> None:
        assert NullLauncher().open("https://example.com") is False
