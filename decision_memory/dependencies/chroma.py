import json
import logging
import time
from typing import Any, Dict, List, Optional

import httpx

from decision_memory.config import (
	get_chroma_database,
	get_chroma_host,
	get_chroma_port,
	get_chroma_tenant,
	get_env_value,
	_get_bool_env,
)


logger = logging.getLogger("decision_memory.chroma")

# Collections are created for cosine distance so that similarity == 1 - distance.
COLLECTION_METADATA = {"hnsw:space": "cosine", "created_by": "decision-memory"}


class ChromaUnavailableError(RuntimeError):
	"""Chroma could not be reached (connection refused, DNS, timeout)."""


class ChromaRequestError(RuntimeError):
	"""Chroma answered with an error status."""


def _load_headers() -> Optional[Dict[str, str]]:
	# Prefer explicit JSON headers
	raw = get_env_value("CHROMA_HEADERS")
	if raw:
		try:
			parsed = json.loads(raw)
			return parsed if isinstance(parsed, dict) else None
		except ValueError:
			logger.warning("[chroma.headers.invalid] CHROMA_HEADERS is not valid JSON")
			return None
	# Fallback: Authorization from CHROMA_API_KEY
	api_key = get_env_value("CHROMA_API_KEY")
	if api_key and api_key.strip():
		return {"Authorization": f"Bearer {api_key.strip()}"}
	return None


class V2ChromaClient:
	"""Thin Chroma client speaking the v2 REST API over httpx."""

	def __init__(self, host: str, port: int, tenant: str, database: str, ssl: bool = False, headers: Optional[Dict[str, str]] = None):
		self.host = host
		self.port = port
		self.tenant = tenant
		self.database = database
		self.ssl = ssl
		self.headers = headers or {}
		self._base_url = f"{'https' if ssl else 'http'}://{host}:{port}/api/v2"

	@property
	def _collections_endpoint(self) -> str:
		return f"/tenants/{self.tenant}/databases/{self.database}/collections"

	def _make_request(
		self,
		method: str,
		endpoint: str,
		json_data: Optional[Dict] = None,
		retries: int = 3,
		timeout: Optional[float] = None,
	):
		"""Make an HTTP request to the v2 API, retrying connection failures with backoff.

		``timeout`` bounds each attempt; callers on a latency budget pass it with
		``retries=0`` so that a stopped store fails fast.
		"""
		url = f"{self._base_url}{endpoint}"
		headers = {**self.headers, "Content-Type": "application/json"}
		if timeout is None:
			request_timeout = httpx.Timeout(connect=30.0, read=60.0, write=30.0, pool=30.0)
		else:
			request_timeout = httpx.Timeout(timeout)

		for attempt in range(retries + 1):
			try:
				with httpx.Client(timeout=request_timeout) as client:
					resp = client.request(method.upper(), url, headers=headers, json=json_data)
					resp.raise_for_status()
					return resp.json() if resp.content else {}
			except (httpx.ConnectError, httpx.TimeoutException) as e:
				if attempt < retries:
					wait_time = 2 ** attempt  # Exponential backoff: 1s, 2s, 4s
					logger.warning(
						"[chroma.retry] attempt=%s/%s wait=%ss error=%s",
						attempt + 1,
						retries + 1,
						wait_time,
						e,
					)
					time.sleep(wait_time)
					continue
				raise ChromaUnavailableError(
					f"Chroma connection failed after {retries + 1} attempts. Last error: {e}"
				) from e
			except httpx.HTTPStatusError as e:
				raise ChromaRequestError(
					f"Chroma request failed: {e} - Response: {e.response.text}"
				) from e
			except httpx.TransportError as e:
				raise ChromaUnavailableError(f"Chroma transport error: {e}") from e
		raise ChromaUnavailableError(f"Chroma connection failed after {retries + 1} attempts")

	def heartbeat(self, timeout: Optional[float] = None):
		"""Call heartbeat via v2 API."""
		return self._make_request("GET", "/heartbeat", retries=0, timeout=timeout)

	def get_or_create_collection(self, name: str, metadata: Optional[Dict[str, Any]] = None):
		"""Get or create collection using v2 API."""
		try:
			return self.get_collection(name)
		except LookupError:
			pass

		# Metadata cannot be empty on create
		create_data = {
			"name": name,
			"metadata": metadata or dict(COLLECTION_METADATA),
			"get_or_create": True,
		}
		result = self._make_request("POST", self._collections_endpoint, create_data)
		logger.info("[chroma.collection.created] name=%s id=%s", name, result.get("id"))
		return V2Collection(self, name, result.get("id"))

	def get_collection(self, name: str):
		"""Get collection using v2 API."""
		collections = self._make_request("GET", self._collections_endpoint)
		for col in collections:
			if col.get("name") == name:
				return V2Collection(self, name, col.get("id"))
		raise LookupError(f"Collection {name} not found")


class V2Collection:
	"""Minimal collection wrapper for v2 API."""

	def __init__(self, client: V2ChromaClient, name: str, collection_id: str):
		self.client = client
		self.name = name
		self.id = collection_id
		self._endpoint_base = f"/tenants/{client.tenant}/databases/{client.database}/collections/{collection_id}"

	def get(
		self,
		ids: Optional[list] = None,
		where: Optional[Dict] = None,
		limit: Optional[int] = None,
		offset: Optional[int] = None,
		include: Optional[list] = None,
	):
		"""Fetch items by ID or metadata filter using v2 API.

		Args:
			ids: Optional list of IDs to fetch (takes precedence over where)
			where: Optional metadata filter (used if ids not provided)
			limit: Maximum number of items to return
			offset: Number of items to skip
			include: List of fields to include in response (e.g., ["documents", "metadatas"])

		Returns:
			Dict with ids, documents, metadatas based on include parameter
		"""
		# ids are returned by default; Chroma v2 rejects "ids" inside include.
		data: Dict[str, Any] = {
			"include": include or ["documents", "metadatas"],
		}
		if ids is not None:
			data["ids"] = ids
		elif where:
			data["where"] = where
		if limit is not None:
			data["limit"] = limit
		if offset is not None:
			data["offset"] = offset
		return self.client._make_request("POST", f"{self._endpoint_base}/get", data)

	def upsert(self, ids: list, documents: list, embeddings: list, metadatas: list):
		"""Upsert documents to collection."""
		# v2 requires scalar metadata values. Lists/dicts -> JSON strings, None dropped.
		coerced_metadatas = []
		for md in metadatas or []:
			fixed = {}
			for k, v in (md or {}).items():
				if v is None:
					continue
				if isinstance(v, (list, dict)):
					fixed[k] = json.dumps(v)
				else:
					fixed[k] = v
			coerced_metadatas.append(fixed)
		data = {
			"ids": ids,
			"documents": documents,
			"embeddings": embeddings,
			"metadatas": coerced_metadatas,
		}
		return self.client._make_request("POST", f"{self._endpoint_base}/upsert", data)

	def count(self) -> int:
		result = self.client._make_request("GET", f"{self._endpoint_base}/count")
		return int(result or 0)

	def query(
		self,
		query_embeddings: List[List[float]],
		n_results: int = 10,
		where: Optional[Dict] = None,
		include: Optional[list] = None,
		timeout: Optional[float] = None,
	):
		"""Nearest-neighbour query by embedding.

		With ``timeout`` set the request is attempted once; retrieval callers
		prefer a fast "unavailable" over waiting out a cold store.
		"""
		data: Dict[str, Any] = {
			"query_embeddings": query_embeddings,
			"n_results": n_results,
			"include": include or ["documents", "metadatas", "distances"],
		}
		if where:
			data["where"] = where
		retries = 0 if timeout is not None else 3
		return self.client._make_request(
			"POST", f"{self._endpoint_base}/query", data, retries=retries, timeout=timeout
		)


def get_chroma_client() -> V2ChromaClient:
	"""Create a Chroma v2 client from configuration."""
	return V2ChromaClient(
		host=get_chroma_host(),
		port=get_chroma_port(),
		tenant=get_chroma_tenant(),
		database=get_chroma_database(),
		ssl=_get_bool_env("CHROMA_SSL", "false"),
		headers=_load_headers(),
	)
