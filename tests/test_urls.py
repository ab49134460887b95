"""Unit tests for core/urls.py -- pure string functions, no I/O.

strip_ticket() must behave exactly like deleting the ticket parameter by hand:
every other byte of the URL survives, including encodings parse_qsl/urlencode
would normalize.
"""

from urllib.parse import parse_qs, urlparse

import pytest

from core.urls import build_login_url, strip_ticket

# ---------------------------------------------------------------------------
# TestStripTicket
# ---------------------------------------------------------------------------


class TestStripTicket:
    @pytest.mark.parametrize(
        ("url", "expected"),
        [
            # sole parameter
            ("/reports?ticket=ST-1-abc", "/reports"),
            # first among several
            ("/reports?ticket=ST-1-abc&year=2024&q=x", "/reports?year=2024&q=x"),
            # middle
            ("/reports?year=2024&ticket=ST-1-abc&q=x", "/reports?year=2024&q=x"),
            # last
            ("/reports?year=2024&q=x&ticket=ST-1-abc", "/reports?year=2024&q=x"),
            # absolute URL
            ("https://app.example.org/a/b?ticket=ST-9", "https://app.example.org/a/b"),
        ],
    )
    def test_removes_ticket_in_every_position(self, url, expected):
        assert strip_ticket(url) == expected

    def test_output_has_no_ticket_parameter(self):
        stripped = strip_ticket("https://app.example.org/r?a=1&ticket=ST-1&b=2")
        assert "ticket" not in parse_qs(urlparse(stripped).query)

    def test_removes_repeated_tickets(self):
        assert strip_ticket("/r?ticket=A&x=1&ticket=B") == "/r?x=1"

    def test_url_without_ticket_is_returned_unchanged(self):
        # Same string, including oddities a re-encoding pass would normalize.
        url = "/search?q=a%20b&empty=&flag&tag=x+y"
        assert strip_ticket(url) == url

    def test_url_without_query_is_unchanged(self):
        assert strip_ticket("/reports") == "/reports"

    def test_trailing_question_mark_without_ticket_is_unchanged(self):
        assert strip_ticket("/reports?") == "/reports?"

    def test_idempotent(self):
        url = "/reports?year=2024&ticket=ST-1-abc&q=x"
        once = strip_ticket(url)
        assert strip_ticket(once) == once

    def test_other_parameters_keep_their_encoding(self):
        assert strip_ticket("/s?q=a%20b&ticket=T&r=c+d") == "/s?q=a%20b&r=c+d"

    def test_parameter_merely_containing_ticket_is_kept(self):
        url = "/s?ticket_id=5&myticket=6"
        assert strip_ticket(url) == url

    def test_fragment_is_preserved(self):
        assert strip_ticket("/doc?ticket=T1&page=2#section-3") == "/doc?page=2#section-3"

    def test_known_ticket_value_only_removes_that_value(self):
        assert strip_ticket("/r?ticket=A&ticket=B", ticket="A") == "/r?ticket=B"

    def test_known_ticket_value_not_present_is_noop(self):
        url = "/r?ticket=A"
        assert strip_ticket(url, ticket="Z") == url


# ---------------------------------------------------------------------------
# TestBuildLoginUrl
# ---------------------------------------------------------------------------


class TestBuildLoginUrl:
    def test_service_is_urlencoded(self):
        url = build_login_url("https://cas.example.org/cas/login", "http://app/reports?year=2024")
        assert url == "https://cas.example.org/cas/login?service=http%3A%2F%2Fapp%2Freports%3Fyear%3D2024"

    def test_gateway_and_renew_flags(self):
        url = build_login_url("https://cas/login", "http://app/", gateway=True, renew=True)
        qs = parse_qs(urlparse(url).query)
        assert qs == {"service": ["http://app/"], "gateway": ["true"], "renew": ["true"]}

    def test_flags_absent_by_default(self):
        qs = parse_qs(urlparse(build_login_url("https://cas/login", "http://app/")).query)
        assert set(qs) == {"service"}

    def test_login_url_with_existing_query(self):
        url = build_login_url("https://cas/login?locale=fr", "http://app/")
        assert url.startswith("https://cas/login?locale=fr&service=")
