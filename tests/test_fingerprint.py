"""Tests for fingerprint generation and the best-effort stealth helpers."""

import random

from pricewatch.scrapers.utils.fingerprint import (
    ACCEPT_LANGUAGES,
    USER_AGENTS,
    VIEWPORTS,
    Fingerprint,
    FingerprintRandomizer,
    apply_fingerprint,
    human_delay,
    human_scroll,
    random_mouse_movement,
)

FIREFOX_UA = "Mozilla/5.0 (Windows NT 10.0; Win64; x64; rv:133.0) Gecko/20100101 Firefox/133.0"
CHROME_MAC_UA = (
    "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/131.0.0.0 Safari/537.36"
)


class BrokenPage:
    viewport_size = {"width": 1280, "height": 720}

    async def evaluate(self, script):
        raise RuntimeError("Target page, context or browser has been closed")


class BrokenContext:
    async def add_init_script(self, script):
        raise RuntimeError("context closed")


class TestFingerprintRandomizer:
    def test_generated_values_come_from_pools(self):
        randomizer = FingerprintRandomizer(rng=random.Random(7))
        for _ in range(20):
            fp = randomizer.generate()
            assert fp.user_agent in USER_AGENTS
            assert (fp.viewport["width"], fp.viewport["height"]) in VIEWPORTS
            locale, languages = ACCEPT_LANGUAGES[fp.accept_language]
            assert fp.locale == locale
            assert fp.languages == languages

    def test_seeded_rng_is_reproducible(self):
        first = FingerprintRandomizer(rng=random.Random(42)).generate()
        second = FingerprintRandomizer(rng=random.Random(42)).generate()
        assert first == second


class TestFingerprint:
    def _fingerprint(self, user_agent):
        return Fingerprint(
            user_agent=user_agent,
            viewport={"width": 1920, "height": 1080},
            accept_language="de-DE,de;q=0.9,en;q=0.8",
            locale="de-DE",
            languages=["de-DE", "de", "en"],
        )

    def test_chrome_sends_client_hints(self):
        headers = self._fingerprint(CHROME_MAC_UA).extra_http_headers()
        assert headers["Accept-Language"] == "de-DE,de;q=0.9,en;q=0.8"
        assert 'v="131"' in headers["Sec-Ch-Ua"]
        assert headers["Sec-Ch-Ua-Platform"] == '"macOS"'

    def test_firefox_sends_no_client_hints(self):
        headers = self._fingerprint(FIREFOX_UA).extra_http_headers()
        assert not any(name.startswith("Sec-Ch-Ua") for name in headers)

    def test_context_options(self):
        options = self._fingerprint(CHROME_MAC_UA).context_options()
        assert options["user_agent"] == CHROME_MAC_UA
        assert options["viewport"] == {"width": 1920, "height": 1080}
        assert options["locale"] == "de-DE"

    def test_stealth_script_embeds_languages(self):
        script = self._fingerprint(FIREFOX_UA).stealth_script()
        assert "['de-DE', 'de', 'en']" in script
        assert "webdriver" in script
        assert "__LANGUAGES__" not in script


class TestBestEffortHelpers:
    async def test_apply_fingerprint_swallows_errors(self):
        fp = FingerprintRandomizer(rng=random.Random(1)).generate()
        await apply_fingerprint(BrokenContext(), fp)

    async def test_human_scroll_swallows_errors(self):
        await human_scroll(BrokenPage())

    async def test_mouse_movement_swallows_errors(self):
        # No mouse attribute at all
        await random_mouse_movement(BrokenPage())

    async def test_human_delay_accepts_reversed_bounds(self):
        await human_delay(5, 0)

    async def test_mouse_movement_stays_inside_viewport(self, make_page):
        page = make_page()
        await random_mouse_movement(page)
        [(x, y, steps)] = page.mouse.moves
        assert 100 <= x <= 1180
        assert 100 <= y <= 620
        assert steps == 10
