import pytest
import pytest_asyncio

from kbsearch.search.cache import SearchCache
from kbsearch.search.expansion import QueryExpansionService, extract_key_terms, parse_variants
from kbsearch.search.types import ExpansionMethod, QuerySource


@pytest_asyncio.fixture
async def expander(fake_ollama):
    expander = QueryExpansionService(client=fake_ollama.client(), model="qwen3:1.7b")
    yield expander
    await expander.close()


class TestExtractKeyTerms:
    def test_most_frequent_terms(self):
        texts = [
            "Babel blocks execute python code",
            "python babel session with results",
            "results of python blocks",
        ]
        terms = extract_key_terms(texts, "org", max_terms=3)
        assert terms == ["python", "babel", "blocks"]

    def test_excludes_query_terms(self):
        terms = extract_key_terms(["python python python kernels"], "Python notebooks")
        assert "python" not in terms
        assert terms == ["kernels"]

    def test_drops_stopwords_and_short_tokens(self):
        terms = extract_key_terms(["the and of a to is it we go up zz org-mode"], "query")
        assert terms == ["org", "mode"]

    def test_respects_max_terms(self):
        assert len(extract_key_terms(["alpha beta gamma delta epsilon zeta"], "q", max_terms=2)) == 2

    def test_empty(self):
        assert extract_key_terms([], "query") == []


class TestParseVariants:
    def test_first_json_array(self):
        reply = 'Sure! ["a b", "c d"] and also ["ignored"]'
        assert parse_variants(reply, "query", 3) == ["a b", "c d"]

    def test_filters_invalid_entries(self):
        reply = '["query", "", 3, null, "other phrasing"]'
        assert parse_variants(reply, "query", 5) == ["other phrasing"]

    def test_limits_variants(self):
        assert parse_variants('["a", "b", "c", "d"]', "q", 2) == ["a", "b"]

    def test_no_array(self):
        assert parse_variants("no json here", "q", 3) == []


class TestPrfExpansion:
    def test_adds_prf_variant(self, expander):
        expanded = expander.expand_prf("kernel", ["jupyter kernel restart", "jupyter session"], term_count=2)

        assert [e.source for e in expanded] == [QuerySource.ORIGINAL, QuerySource.PRF]
        assert expanded[0].query == "kernel"
        assert expanded[0].weight == 2.0
        assert expanded[1].query == "kernel jupyter restart"
        assert expanded[1].weight == 1.0

    def test_no_contents_returns_original(self, expander):
        expanded = expander.expand_prf("kernel", [])
        assert len(expanded) == 1
        assert expanded[0].source == QuerySource.ORIGINAL

    def test_no_terms_returns_original(self, expander):
        assert len(expander.expand_prf("kernel", ["the and of"])) == 1

    def test_cached(self, fake_ollama):
        cache = SearchCache()
        expander = QueryExpansionService(client=fake_ollama.client(), cache=cache)

        first = expander.expand_prf("kernel", ["jupyter restart"])
        second = expander.expand_prf("kernel", ["something else entirely"])

        assert first == second
        assert cache.get_stats()["expansion"].hits == 1
        cache.dispose()


class TestLlmExpansion:
    @pytest.mark.asyncio
    async def test_parses_variants(self, fake_ollama, expander):
        fake_ollama.reply = lambda prompt: '["jupyter kernel", "ipython runtime"]'

        expanded = await expander.expand_llm("kernel")

        assert [e.query for e in expanded] == ["kernel", "jupyter kernel", "ipython runtime"]
        assert [e.source for e in expanded[1:]] == [QuerySource.LLM, QuerySource.LLM]
        assert 'Original query: "kernel"' in fake_ollama.prompts[0]

    @pytest.mark.asyncio
    async def test_server_down_returns_original(self, fake_ollama, expander):
        fake_ollama.down = True
        expanded = await expander.expand_llm("kernel")
        assert [e.query for e in expanded] == ["kernel"]

    @pytest.mark.asyncio
    async def test_garbage_reply_returns_original(self, fake_ollama, expander):
        fake_ollama.reply = lambda prompt: "[not json"
        assert len(await expander.expand_llm("kernel")) == 1

    @pytest.mark.asyncio
    async def test_malformed_array_returns_original(self, fake_ollama, expander):
        fake_ollama.reply = lambda prompt: "[alpha, beta]"
        assert len(await expander.expand_llm("kernel")) == 1

    @pytest.mark.asyncio
    async def test_cached_variants_skip_oracle(self, fake_ollama):
        cache = SearchCache()
        expander = QueryExpansionService(client=fake_ollama.client(), cache=cache)
        fake_ollama.reply = lambda prompt: '["a variant"]'

        await expander.expand_llm("kernel")
        expanded = await expander.expand_llm("kernel")

        assert [e.query for e in expanded] == ["kernel", "a variant"]
        assert len(fake_ollama.prompts) == 1
        cache.dispose()
        await expander.close()


class TestExpand:
    @pytest.mark.asyncio
    async def test_both_methods(self, fake_ollama, expander):
        fake_ollama.reply = lambda prompt: '["jupyter kernel"]'

        expanded = await expander.expand("kernel", ["jupyter restart"], method=ExpansionMethod.BOTH)

        assert [e.source for e in expanded] == [QuerySource.ORIGINAL, QuerySource.PRF, QuerySource.LLM]

    @pytest.mark.asyncio
    async def test_routes_prf(self, fake_ollama, expander):
        expanded = await expander.expand("kernel", ["jupyter restart"], method=ExpansionMethod.PRF)
        assert [e.source for e in expanded] == [QuerySource.ORIGINAL, QuerySource.PRF]
        assert fake_ollama.prompts == []


class TestAvailability:
    @pytest.mark.asyncio
    async def test_check_available_cached(self, fake_ollama, expander):
        assert await expander.check_available() is True
        fake_ollama.down = True
        assert await expander.check_available() is True

        expander.reset_availability()
        assert await expander.check_available() is False

    @pytest.mark.asyncio
    async def test_model_availability(self, fake_ollama, expander):
        assert await expander.is_model_available() is True
        fake_ollama.models = ["other:1b"]
        assert await expander.is_model_available() is False
