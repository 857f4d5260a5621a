"""Tests for e-mail and link resolution."""

from channel_discovery.contacts import (
    classify_link,
    classify_links,
    extract_emails,
    extract_social_links,
    resolve_contacts,
    unwrap_redirect,
)


# ── E-mails ─────────────────────────────────────────────────────────────────


class TestExtractEmails:

    def test_standard(self):
        assert extract_emails("Business: biz@studio.tv") == ["biz@studio.tv"]

    def test_spaced(self):
        assert extract_emails("mail biz @ studio . tv for sponsorships") == ["biz@studio.tv"]

    def test_worded(self):
        assert extract_emails("contact me at biz at studio dot tv") == ["biz@studio.tv"]

    def test_bracketed(self):
        assert extract_emails("biz[at]studio[dot]tv") == ["biz@studio.tv"]
        assert extract_emails("biz (at) studio (dot) tv") == ["biz@studio.tv"]

    def test_normalized_to_lower_case(self):
        assert extract_emails("Biz@Studio.TV") == ["biz@studio.tv"]

    def test_subdomains(self):
        assert extract_emails("team@mail.studio.co.uk") == ["team@mail.studio.co.uk"]

    def test_first_seen_order_and_dedup(self):
        text = "b@second.tv, a@first.tv, and again b@second.tv or b at second dot tv"
        assert extract_emails(text) == ["b@second.tv", "a@first.tv"]

    def test_placeholders_dropped(self):
        text = "name@example.com you@yourdomain.com email@studio.tv real@studio.tv logo@2x.png"
        assert extract_emails(text) == ["real@studio.tv"]

    def test_html_entities_decoded(self):
        assert extract_emails("biz&#64;studio.tv") == ["biz@studio.tv"]

    def test_none_input(self):
        assert extract_emails(None) == []


# ── Links ───────────────────────────────────────────────────────────────────


class TestClassifyLink:

    def test_redirect_unwrapped(self):
        url = "https://www.youtube.com/redirect?event=channel&q=https%3A%2F%2Fwww.instagram.com%2Fhomebarista%2F"
        assert unwrap_redirect(url) == "https://www.instagram.com/homebarista/"
        assert classify_link(url) == ("instagram", "https://instagram.com/homebarista")

    def test_relative_redirect(self):
        url = "/redirect?q=https%3A%2F%2Fhomebarista.coffee%2Fshop"
        assert classify_link(url) == ("website", "https://homebarista.coffee/shop")

    def test_x_is_twitter(self):
        assert classify_link("https://x.com/brewguy") == ("twitter", "https://twitter.com/brewguy")

    def test_tiktok_handle(self):
        assert classify_link("https://www.tiktok.com/@brewguy") == ("tiktok", "https://tiktok.com/@brewguy")

    def test_source_site_is_not_a_website(self):
        assert classify_link("https://www.youtube.com/@other") == (None, None)
        assert classify_link("https://youtu.be/abc") == (None, None)
        assert classify_link("/@other") == (None, None)

    def test_share_links_are_not_profiles(self):
        assert classify_link("https://www.facebook.com/sharer/sharer.php?u=x") == (None, None)
        assert classify_link("https://instagram.com/p/abc123") == (None, None)

    def test_non_http_schemes(self):
        assert classify_link("mailto:biz@studio.tv") == (None, None)
        assert classify_link("javascript:void(0)") == (None, None)

    def test_bare_domain_website(self):
        assert classify_link("homebarista.coffee") == ("website", "https://homebarista.coffee")


class TestClassifyLinks:

    def test_first_match_per_platform(self):
        links = classify_links([
            "https://instagram.com/first",
            "https://instagram.com/second",
            "https://shop.example.net",
            "https://blog.example.net",
        ])
        assert links["instagram"] == "https://instagram.com/first"
        assert links["website"] == "https://shop.example.net"

    def test_output_in_platform_order(self):
        links = classify_links([
            "https://homebarista.coffee",
            "https://twitch.tv/brew",
            "https://instagram.com/brew",
        ])
        assert list(links) == ["instagram", "twitch", "website"]


class TestTextMentions:

    def test_urls_and_handles(self):
        text = "Follow along!\nIG: @homebarista\ntwitter.com/brewguy\nShop: https://homebarista.coffee."
        links = extract_social_links(text)
        assert links == {
            "instagram": "https://instagram.com/homebarista",
            "twitter": "https://twitter.com/brewguy",
            "website": "https://homebarista.coffee",
        }

    def test_none_input(self):
        assert extract_social_links(None) == {}


# ── resolve_contacts ────────────────────────────────────────────────────────


class TestResolveContacts:

    html = """
    <a href="mailto:press@homebarista.coffee">Press</a>
    <a href="https://www.youtube.com/redirect?q=https%3A%2F%2Finstagram.com%2Fanchor_ig">IG</a>
    <a href="https://www.youtube.com/@homebarista/videos">Videos</a>
    """

    def test_sources_tagged(self):
        info = resolve_contacts(
            "About\nReach us: hello@homebarista.coffee",
            self.html,
            description="Business: biz@homebarista.coffee",
        )
        assert info.emails == [
            "biz@homebarista.coffee",
            "hello@homebarista.coffee",
            "press@homebarista.coffee",
        ]
        assert info.email_sources == {
            "biz@homebarista.coffee": "description",
            "hello@homebarista.coffee": "about_page",
            "press@homebarista.coffee": "about_page",
        }

    def test_declared_links_take_precedence(self):
        info = resolve_contacts(
            "instagram.com/text_ig",
            self.html,
            extra_links=["https://instagram.com/declared_ig"],
        )
        assert info.social_links["instagram"] == "https://instagram.com/declared_ig"

    def test_anchor_beats_text_mention(self):
        info = resolve_contacts("instagram.com/text_ig twitch.tv/brew", self.html)
        assert info.social_links["instagram"] == "https://instagram.com/anchor_ig"
        assert info.social_links["twitch"] == "https://twitch.tv/brew"

    def test_deterministic(self):
        args = ("hello@homebarista.coffee x.com/brew tiktok.com/@brew", self.html)
        first = resolve_contacts(*args, description="biz at homebarista dot coffee")
        second = resolve_contacts(*args, description="biz at homebarista dot coffee")
        assert first == second
        assert list(first.social_links) == list(second.social_links)

    def test_nothing_found(self):
        info = resolve_contacts("Just videos about coffee")
        assert info.emails == []
        assert info.social_links == {}
