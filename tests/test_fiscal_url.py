"""
Tests for fiscal URL validation
"""
import pytest

from scanflow.fiscal_url import is_fiscal_url, normalize_fiscal_url


class TestNormalizeFiscalUrl:
    """Tests for normalize_fiscal_url"""

    def test_valid_url_returned_unchanged(self):
        url = "https://suf.purs.gov.rs/abc?x=1"
        assert normalize_fiscal_url(url) == url

    def test_whitespace_trimmed(self):
        assert normalize_fiscal_url("  https://suf.purs.gov.rs/v/?vl=A1\n") == "https://suf.purs.gov.rs/v/?vl=A1"

    def test_http_rejected(self):
        assert normalize_fiscal_url("http://suf.purs.gov.rs/x") is None

    def test_host_must_match_exactly(self):
        assert normalize_fiscal_url("https://evil.com/suf.purs.gov.rs") is None
        assert normalize_fiscal_url("https://suf.purs.gov.rs.evil.com/x") is None
        assert normalize_fiscal_url("https://fake-suf.purs.gov.rs/x") is None

    def test_userinfo_does_not_fool_host_check(self):
        assert normalize_fiscal_url("https://suf.purs.gov.rs@evil.com/x") is None

    def test_hostname_case_insensitive(self):
        url = "https://SUF.PURS.GOV.RS/v/?vl=A1"
        assert normalize_fiscal_url(url) == url

    def test_port_allowed(self):
        assert normalize_fiscal_url("https://suf.purs.gov.rs:443/x") == "https://suf.purs.gov.rs:443/x"

    @pytest.mark.parametrize(
        "raw",
        [
            "",
            "   ",
            "suf.purs.gov.rs/x",
            "//suf.purs.gov.rs/x",
            "https:/suf.purs.gov.rs/x",
            "ftp://suf.purs.gov.rs/x",
            "javascript:alert(1)",
            "https://suf.purs.gov.rs:99999/x",
            "https://suf.purs.gov.rs:abc/x",
            "WIFI:S:home;T:WPA;P:secret;;",
        ],
    )
    def test_malformed_input(self, raw):
        assert normalize_fiscal_url(raw) is None

    def test_non_string_never_raises(self):
        assert normalize_fiscal_url(None) is None
        assert normalize_fiscal_url(42) is None
        assert normalize_fiscal_url(b"https://suf.purs.gov.rs/x") is None

    def test_is_fiscal_url(self):
        assert is_fiscal_url("https://suf.purs.gov.rs/v/?vl=A1")
        assert not is_fiscal_url("https://example.com")
