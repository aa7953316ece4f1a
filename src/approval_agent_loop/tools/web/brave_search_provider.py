import httpx

from approval_agent_loop.tools.web.search_provider import SearchResult

_BRAVE_SEARCH_URL = "https://api.search.brave.com/res/v1/web/search"
_TIMEOUT_SECONDS = 30


class BraveSearchProvider:
    def __init__(self, api_key: str, *, client: httpx.AsyncClient | None = None) -> None:
        self._api_key = api_key
        self._client = client

    @property
    def provider_name(self) -> str:
        return "Brave"

    async def search(self, query: str, count: int) -> list[SearchResult]:
        headers = {
            "X-Subscription-Token": self._api_key,
            "Accept": "application/json",
        }
        params = {"q": query, "count": count, "extra_snippets": "false"}

        if self._client is not None:
            response = await self._client.get(_BRAVE_SEARCH_URL, headers=headers, params=params)
        else:
            async with httpx.AsyncClient(timeout=_TIMEOUT_SECONDS) as client:
                response = await client.get(_BRAVE_SEARCH_URL, headers=headers, params=params)
        response.raise_for_status()

        data = response.json()
        # News hits first: the web search specialist is mostly asked about recent events.
        raw_results = data.get("news", {}).get("results", []) + data.get("web", {}).get("results", [])

        seen: set[str] = set()
        results: list[SearchResult] = []
        for r in raw_results:
            url = r.get("url", "")
            if url in seen:
                continue
            seen.add(url)
            results.append(
                SearchResult(
                    title=r.get("title", "(no title)"),
                    url=url,
                    description=r.get("description", ""),
                    age=r.get("age", ""),
                )
            )
        return results[:count]
