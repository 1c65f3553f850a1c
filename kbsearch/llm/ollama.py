import httpx

from kbsearch.constants import OLLAMA_URL, REQUEST_TIMEOUT
from kbsearch.llm.retry import with_retry


def model_matches(name: str, model: str) -> bool:
    """`qwen3` matches `qwen3:latest`; a tagged model must match exactly."""
    return name == model or name.startswith(model + ":")


class OllamaClient:
    """Minimal async client for an Ollama-compatible generate server."""

    def __init__(
        self,
        base_url: str = OLLAMA_URL,
        timeout: float = REQUEST_TIMEOUT,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._transport = transport
        self._client: httpx.AsyncClient | None = None

    @property
    def client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(
                base_url=self.base_url,
                timeout=self.timeout,
                transport=self._transport,
                headers={"Content-Type": "application/json"},
            )
        return self._client

    async def list_models(self, timeout: float | None = None) -> list[str]:
        """Names from the tags endpoint. Raises on transport or protocol errors."""
        resp = await self.client.get("/api/tags", timeout=timeout or self.timeout)
        resp.raise_for_status()
        models = resp.json().get("models")
        if not isinstance(models, list):
            raise ValueError("tags response has no model list")
        return [m["name"] for m in models if isinstance(m, dict) and "name" in m]

    async def has_model(self, model: str, timeout: float | None = None) -> bool:
        names = await self.list_models(timeout)
        return any(model_matches(name, model) for name in names)

    async def _generate(
        self,
        model: str,
        prompt: str,
        temperature: float,
        max_tokens: int,
        timeout: float | None,
    ) -> str:
        body = {
            "model": model,
            "prompt": prompt,
            "stream": False,
            "options": {"temperature": temperature, "num_predict": max_tokens},
        }
        resp = await self.client.post("/api/generate", json=body, timeout=timeout or self.timeout)
        resp.raise_for_status()
        return resp.json().get("response") or ""

    async def generate(
        self,
        model: str,
        prompt: str,
        temperature: float = 0.1,
        max_tokens: int = 16,
        timeout: float | None = None,
    ) -> str:
        return await with_retry(
            self._generate,
            model=model,
            prompt=prompt,
            temperature=temperature,
            max_tokens=max_tokens,
            timeout=timeout,
        )

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None
