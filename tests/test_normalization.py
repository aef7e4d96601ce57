"""
Tests for text, URL and name normalization.
"""

from jobstream.pipelines.normalization import (
    clean_html,
    company_domain_from_url,
    greenhouse_board_token,
    html_title,
    is_ats_host,
    normalize_domain,
    normalize_location,
    normalize_name,
    normalize_text,
    normalize_title,
    normalize_url,
)


class TestNormalizeText:
    def test_empty_and_blank(self):
        assert normalize_text("") == ""
        assert normalize_text("   \n\t ") == ""

    def test_strips_html_and_noise(self):
        html = """
        <html><head><title>Ignored</title><style>.x{}</style></head>
        <body><nav>Menu</nav><h1>Backend  Engineer</h1><p>Build   APIs</p>
        <script>track()</script></body></html>
        """
        text = normalize_text(html)
        assert "Backend Engineer" in text
        assert "Build APIs" in text
        assert "track()" not in text
        assert "Menu" not in text

    def test_keeps_json_ld(self):
        html = '<html><body><script type="application/ld+json">{"title": "SRE"}</script><p>x</p></body></html>'
        assert '"title": "SRE"' in clean_html(html)

    def test_truncates(self):
        assert len(normalize_text("word " * 100, max_chars=20)) == 20

    def test_smart_punctuation(self):
        assert normalize_text("It’s a “senior” role — remote") == 'It\'s a "senior" role - remote'


class TestDomains:
    def test_normalize_domain(self):
        assert normalize_domain("https://WWW.Acme.com/careers?x=1") == "acme.com"
        assert normalize_domain("acme.com") == "acme.com"
        assert normalize_domain("") is None
        assert normalize_domain(None) is None

    def test_ats_hosts_are_not_company_domains(self):
        assert is_ats_host("boards.greenhouse.io")
        assert is_ats_host("acme.myworkdayjobs.com")
        assert not is_ats_host("acme.com")
        assert company_domain_from_url("https://boards.greenhouse.io/acme/jobs/1") is None
        assert company_domain_from_url("https://careers.acme.com/jobs/1") == "careers.acme.com"

    def test_normalize_url(self):
        assert normalize_url("HTTPS://Acme.com:443/jobs/1/?utm=x#apply") == "https://acme.com/jobs/1"
        assert normalize_url("http://acme.com:8080/a/") == "http://acme.com:8080/a"
        assert normalize_url("not a url") == "not a url"

    def test_greenhouse_board_token(self):
        assert greenhouse_board_token("https://boards.greenhouse.io/vercel") == "vercel"
        assert greenhouse_board_token("https://job-boards.greenhouse.io/acme/jobs/123") == "acme"
        assert greenhouse_board_token("https://boards-api.greenhouse.io/v1/boards/acme/jobs") == "acme"
        assert greenhouse_board_token("https://jobs.lever.co/acme") is None
        assert greenhouse_board_token(None) is None


class TestNames:
    def test_legal_suffixes_dropped(self):
        assert normalize_name("Acme Corp") == "acme"
        assert normalize_name("ACME, Inc.") == "acme"
        assert normalize_name("Acme") == "acme"

    def test_blank_name(self):
        assert normalize_name("   ") is None
        assert normalize_name(None) is None

    def test_title_and_location(self):
        assert normalize_title("  Senior   Software Engineer ") == "senior software engineer"
        assert normalize_location(None) == ""
        assert normalize_location(" New  York ") == "new york"

    def test_html_title(self):
        assert html_title("<html><head><title> Data  Engineer </title></head></html>") == "Data Engineer"
        assert html_title("<p>no title</p>") is None
