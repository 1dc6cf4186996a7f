"""Property-based tests using Hypothesis.

Tests invariants of core algorithms: postcode normalization, file
extraction, detection, strategy ordering and chunk arithmetic.
"""

from hypothesis import assume, given
from hypothesis import strategies as st

from sublet_finder.filters.detection import analyze, detect_postcode, resolve_pair
from sublet_finder.models import (
    MatchMethod,
    Outcome,
    Platform,
    Property,
    ScrapeAttempt,
    SearchStrategy,
    StrategyKind,
    count_chunks,
)
from sublet_finder.scrapers.strategies import build_strategies
from sublet_finder.utils.address import canonicalize_postcode, extract_properties

# ---------------------------------------------------------------------------
# Strategies
# ---------------------------------------------------------------------------

# Valid full UK postcodes (matching POSTCODE_PATTERN, with ASCII space)
uk_postcodes = st.from_regex(r"[A-Z]{1,2}[0-9][0-9A-Z]? [0-9][A-Z]{2}", fullmatch=True)

platforms = st.sampled_from(list(Platform))

# Page text that never contains digits, so no postcode part can appear by accident
filler = st.text(alphabet="abcdefghijklmnopqrstuvwxyz <>/='\"", max_size=300)

glasgow_lat = st.floats(min_value=55.7, max_value=56.0, allow_nan=False, allow_infinity=False)
glasgow_lon = st.floats(min_value=-4.5, max_value=-4.0, allow_nan=False, allow_infinity=False)


# ---------------------------------------------------------------------------
# Postcode normalization and extraction
# ---------------------------------------------------------------------------


class TestCanonicalizePostcodeProperties:
    @given(uk_postcodes)
    def test_idempotent(self, postcode: str) -> None:
        canonical = canonicalize_postcode(postcode)
        assert canonical is not None
        assert canonicalize_postcode(canonical) == canonical

    @given(uk_postcodes)
    def test_case_insensitive(self, postcode: str) -> None:
        assert canonicalize_postcode(postcode.lower()) == canonicalize_postcode(postcode)


class TestExtractPropertiesProperties:
    @given(st.lists(uk_postcodes, max_size=20))
    def test_unique_in_first_seen_order(self, postcodes: list[str]) -> None:
        text = "address,postcode\n" + "\n".join(f"1 High Street,{pc}" for pc in postcodes)
        extracted = [p.postcode for p in extract_properties(text)]

        expected: list[str] = []
        for pc in postcodes:
            if pc not in expected:
                expected.append(pc)
        assert extracted == expected

    @given(st.lists(uk_postcodes, min_size=1, max_size=10))
    def test_never_geocoded(self, postcodes: list[str]) -> None:
        text = "postcode\n" + "\n".join(postcodes)
        assert all(not p.has_coordinates for p in extract_properties(text))


# ---------------------------------------------------------------------------
# Detection
# ---------------------------------------------------------------------------


class TestDetectionProperties:
    @given(uk_postcodes, filler, filler)
    def test_embedded_postcode_is_exact(self, postcode: str, before: str, after: str) -> None:
        method, confidence = detect_postcode(before + postcode + after, postcode)
        assert method is MatchMethod.EXACT
        assert confidence == 1.0

    @given(uk_postcodes, filler)
    def test_absent_postcode_not_found(self, postcode: str, body: str) -> None:
        assert detect_postcode(body, postcode) == (MatchMethod.NONE, 0.0)

    @given(uk_postcodes, filler, platforms)
    def test_found_iff_method(self, postcode: str, body: str, platform: Platform) -> None:
        verdict = analyze(body, postcode, platform)
        assert verdict.found == (verdict.method is not MatchMethod.NONE)
        assert 0.0 <= verdict.confidence <= 1.0
        assert 0.0 <= verdict.blocking_confidence <= 1.0

    @given(uk_postcodes, filler, st.integers(min_value=100, max_value=400))
    def test_text_past_preview_is_ignored(self, postcode: str, body: str, preview: int) -> None:
        assume(len(body) <= preview)
        padded = body + " " * (preview - len(body)) + postcode
        verdict = analyze(padded, postcode, Platform.SPAREROOM, preview_chars=preview)
        assert not verdict.found


class TestResolvePairProperties:
    @given(st.lists(st.booleans(), min_size=1, max_size=4))
    def test_all_failed_is_error(self, flags: list[bool]) -> None:
        attempts = [
            ScrapeAttempt(
                strategy=SearchStrategy(
                    platform=Platform.GUMTREE,
                    kind=StrategyKind.ADDRESS_FALLBACK,
                    request_url=f"https://example.test/{i}",
                    ordinal=i,
                ),
                success=False,
                latency_ms=0,
                html_size=0,
                cost_units=0,
                error="HTTP 500: upstream",
            )
            for i in range(len(flags))
        ]
        resolution = resolve_pair(attempts)
        assert resolution.suggested_outcome is Outcome.ERROR
        assert resolution.attempt is attempts[-1]


# ---------------------------------------------------------------------------
# Strategies and chunking
# ---------------------------------------------------------------------------


class TestBuildStrategiesProperties:
    @given(uk_postcodes, platforms, st.one_of(st.none(), st.tuples(glasgow_lat, glasgow_lon)))
    def test_ordering(
        self, postcode: str, platform: Platform, coords: tuple[float, float] | None
    ) -> None:
        if coords is None:
            prop = Property(postcode=postcode)
        else:
            prop = Property(postcode=postcode, latitude=coords[0], longitude=coords[1])

        strategies = build_strategies(prop, platform)

        assert [s.ordinal for s in strategies] == ([0, 1] if coords is not None else [1])
        assert strategies[-1].kind is StrategyKind.ADDRESS_FALLBACK
        assert (strategies[0].kind is StrategyKind.COORDINATE) == (coords is not None)
        assert all(s.platform is platform for s in strategies)


class TestCountChunksProperties:
    @given(st.integers(min_value=0, max_value=5000), st.integers(min_value=1, max_value=500))
    def test_chunks_cover_exactly(self, total: int, size: int) -> None:
        chunks = count_chunks(total, size)
        assert chunks * size >= total
        assert total == 0 or (chunks - 1) * size < total
