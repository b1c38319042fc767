"""Vector Database Output Node

Embeds a text field of every input item and upserts the vectors, in batches,
into Pinecone, Qdrant or Weaviate. The embedding provider is chosen by model
prefix: ``text-embedding*`` (OpenAI), ``voyage*`` (Voyage AI), ``embed*``
(Cohere). Item-level problems are collected and reported; they do not stop
the remaining batches.
"""

from __future__ import annotations

import logging
import uuid
from typing import Any, Dict, List, Optional, Tuple

import httpx

from .. import settings
from ..engine.context import NodeExecutionContext, NodeResult, now_iso
from ..engine.template import MISSING, lookup, stringify
from ..errors import ConfigurationError
from .registry import CATEGORY_OUTPUT, BaseNodeImpl, ExecutorMetadata, register_node_type
from .utils import truncate

logger = logging.getLogger(__name__)

EMBEDDING_MODELS = [
    "text-embedding-ada-002",
    "text-embedding-3-small",
    "text-embedding-3-large",
    "voyage-2",
    "voyage-large-2",
    "voyage-3",
    "embed-english-v3.0",
    "embed-multilingual-v3.0",
]

# model prefix -> (provider, endpoint, api key secret)
EMBEDDING_PROVIDERS = {
    "text-embedding": ("openai", "https://api.openai.com/v1/embeddings", "OPENAI_API_KEY"),
    "voyage": ("voyage", "https://api.voyageai.com/v1/embeddings", "VOYAGE_API_KEY"),
    "embed": ("cohere", "https://api.cohere.ai/v1/embed", "COHERE_API_KEY"),
}

ID_NAMESPACE = uuid.UUID("6f1c3a52-9a43-4c38-9d0e-52a8f4f1b7d1")


def embedding_provider(model: str) -> Tuple[str, str, str]:
    for prefix, provider in EMBEDDING_PROVIDERS.items():
        if model.startswith(prefix):
            return provider
    raise ConfigurationError(f"No embedding provider for model '{model}'", field="embeddingModel")


def point_id(value: Any) -> str:
    """Qdrant and Weaviate only accept UUIDs; other ids map to a stable uuid5."""
    text = str(value)
    try:
        return str(uuid.UUID(text))
    except ValueError:
        return str(uuid.uuid5(ID_NAMESPACE, text))


class VectorBatchError(Exception):
    pass


async def create_embeddings(
    client: httpx.AsyncClient,
    texts: List[str],
    model: str,
    api_key: str,
) -> List[List[float]]:
    provider, url, _ = embedding_provider(model)
    if provider == "cohere":
        body: Dict[str, Any] = {"texts": texts, "model": model, "input_type": "search_document"}
    else:
        body = {"input": texts, "model": model}

    response = await client.post(url, json=body, headers={"Authorization": f"Bearer {api_key}"})
    if response.status_code >= 400:
        raise VectorBatchError(f"{provider} embedding API returned HTTP {response.status_code}: {response.text[:200]}")
    payload = response.json()

    if provider == "cohere":
        embeddings = payload.get("embeddings") or []
    else:
        rows = sorted(payload.get("data") or [], key=lambda row: row.get("index", 0))
        embeddings = [row["embedding"] for row in rows]
    if len(embeddings) != len(texts):
        raise VectorBatchError(f"{provider} returned {len(embeddings)} embeddings for {len(texts)} texts")
    return embeddings


@register_node_type(
    node_type="vector-db-output",
    display_name="Vector Database",
    description="Embed text and upsert vectors into a vector database",
    category=CATEGORY_OUTPUT,
    config_schema={
        "type": "object",
        "properties": {
            "provider": {"type": "string", "enum": ["pinecone", "qdrant", "weaviate"]},
            "url": {"type": "string"},
            "apiKey": {"type": "string"},
            "indexName": {"type": "string", "pattern": "^[a-zA-Z0-9][a-zA-Z0-9-_]*$", "maxLength": 255},
            "namespace": {"type": "string", "pattern": "^[a-zA-Z0-9-_]*$", "maxLength": 255},
            "textField": {"type": "string", "minLength": 1},
            "idField": {"type": "string", "minLength": 1},
            "metadataFields": {"type": "array", "items": {"type": "string", "minLength": 1}},
            "embeddingModel": {"type": "string", "enum": EMBEDDING_MODELS},
            "embeddingApiKey": {"type": "string"},
            "upsertMode": {"type": "string", "enum": ["create", "update", "replace"]},
            "batchSize": {"type": "integer", "minimum": 1, "maximum": 1000},
            "includeTimestamp": {"type": "boolean"},
            "retryCount": {"type": "integer", "minimum": 0, "maximum": 10},
            "retryDelay": {"type": "integer", "minimum": 0},
            "errorHandling": {"type": "string", "enum": ["fail", "continue", "retry"]},
        },
        "required": ["provider", "indexName", "textField", "embeddingModel"],
    },
    output_schema={
        "type": "object",
        "properties": {
            "totalProcessed": {"type": "integer"},
            "totalUpserted": {"type": "integer"},
            "totalErrors": {"type": "integer"},
            "results": {"type": "array"},
            "errors": {"type": "array"},
        },
    },
    metadata=ExecutorMetadata(
        allowed_outputs=[],
        max_inputs=1,
        max_outputs=0,
        is_async=True,
        requires_auth=True,
        default_data={
            "idField": "id",
            "metadataFields": [],
            "upsertMode": "create",
            "batchSize": settings.VECTOR_DEFAULT_BATCH_SIZE,
            "includeTimestamp": True,
        },
    ),
    icon="database",
    color="#8B5CF6",
)
class VectorDBOutputNode(BaseNodeImpl):

    def _credentials(self, ctx: NodeExecutionContext) -> Dict[str, Any]:
        secrets = ctx.services.secrets
        provider = self.config["provider"]
        url = self.config.get("url") or secrets.get("VECTOR_DB_URL")
        if not url:
            raise ConfigurationError(f"{provider} requires a url (or VECTOR_DB_URL)", field="url")
        if not url.startswith(("http://", "https://")):
            url = f"https://{url}"
        api_key = self.config.get("apiKey") or secrets.get("VECTOR_DB_API_KEY")
        if provider == "pinecone" and not api_key:
            raise ConfigurationError("pinecone requires an apiKey (or VECTOR_DB_API_KEY)", field="apiKey")

        model = self.config["embeddingModel"]
        _, _, key_secret = embedding_provider(model)
        embedding_key = self.config.get("embeddingApiKey") or secrets.get(key_secret)
        if not embedding_key:
            raise ConfigurationError(
                f"Embedding model '{model}' requires embeddingApiKey (or {key_secret})",
                field="embeddingApiKey",
            )
        return {"url": url.rstrip("/"), "apiKey": api_key, "embeddingApiKey": embedding_key}

    def _prepare(self, item: Any) -> Tuple[Optional[str], str, Dict[str, Any]]:
        """Return (id, text, metadata) for one item or raise ValueError."""
        if not isinstance(item, dict):
            raise ValueError(f"Item must be an object, got {type(item).__name__}")
        text_field = self.config["textField"]
        text = lookup(item, text_field)
        if text is MISSING or text is None or text == "":
            raise ValueError(f"Missing text field '{text_field}' in item")
        text = text if isinstance(text, str) else stringify(text)

        raw_id = lookup(item, self.config.get("idField", "id"))
        item_id = None if raw_id is MISSING or raw_id is None else str(raw_id)
        if item_id is None:
            if self.config.get("upsertMode", "create") != "create":
                raise ValueError(f"upsertMode '{self.config['upsertMode']}' requires an id")
            item_id = str(uuid.uuid4())

        metadata: Dict[str, Any] = {}
        for name in self.config.get("metadataFields") or []:
            value = lookup(item, name)
            if value is not MISSING:
                metadata[name] = value
        if self.config.get("includeTimestamp", True):
            metadata["timestamp"] = now_iso()
        metadata["_source_text"] = truncate(text, settings.VECTOR_SOURCE_TEXT_LIMIT)
        return item_id, text, metadata

    async def execute(self, ctx: NodeExecutionContext) -> NodeResult:
        items = ctx.input
        if isinstance(items, dict):
            items = [items]
        meta = {
            "provider": self.config["provider"],
            "indexName": self.config["indexName"],
            "namespace": self.config.get("namespace"),
            "embeddingModel": self.config["embeddingModel"],
        }
        if not isinstance(items, list):
            return NodeResult.fail(
                "Input must be an array of objects",
                error_type="validation",
                details={"inputType": type(items).__name__},
                **meta,
            )

        credentials = self._credentials(ctx)
        store = VectorStore(ctx.services.http, self.config, credentials)
        batch_size = int(self.config.get("batchSize") or settings.VECTOR_DEFAULT_BATCH_SIZE)
        results: List[Dict[str, Any]] = []
        errors: List[Dict[str, Any]] = []

        for start in range(0, len(items), batch_size):
            batch_number = start // batch_size + 1
            prepared = []
            for offset, item in enumerate(items[start:start + batch_size]):
                index = start + offset
                try:
                    prepared.append((index, *self._prepare(item)))
                except ValueError as e:
                    errors.append({"index": index, "error": str(e)})
            if not prepared:
                continue

            try:
                embeddings = await create_embeddings(
                    ctx.services.http,
                    [text for _, _, text, _ in prepared],
                    self.config["embeddingModel"],
                    credentials["embeddingApiKey"],
                )
                vectors = [
                    {"id": item_id, "values": values, "metadata": metadata}
                    for (_, item_id, _, metadata), values in zip(prepared, embeddings)
                ]
                if self.config.get("upsertMode") == "replace":
                    await store.delete([v["id"] for v in vectors])
                failed = await store.upsert(vectors)
            except (VectorBatchError, httpx.HTTPError) as e:
                logger.warning(f"Vector node {self.node_id}: batch {batch_number} failed: {e}")
                errors.extend({"index": index, "id": item_id, "error": str(e)} for index, item_id, _, _ in prepared)
                continue

            upserted = [item_id for _, item_id, _, _ in prepared if item_id not in failed]
            for index, item_id, _, _ in prepared:
                if item_id in failed:
                    errors.append({"index": index, "id": item_id, "error": failed[item_id]})
            results.append({"batch": batch_number, "vectorsUpserted": len(upserted), "ids": upserted})

        total_upserted = sum(r["vectorsUpserted"] for r in results)
        data = {
            "totalProcessed": len(items),
            "totalUpserted": total_upserted,
            "totalErrors": len(errors),
            "results": results,
            "errors": errors,
        }
        logger.info(
            f"Vector node {self.node_id}: upserted {total_upserted}/{len(items)} item(s) "
            f"into {self.config['provider']}:{self.config['indexName']}"
        )
        if errors and total_upserted == 0 and items:
            return NodeResult.fail(f"No vectors upserted ({len(errors)} error(s))", data=data, **meta)
        return NodeResult.ok(data, batches=len(results), **meta)


class VectorStore:
    """Provider-specific upsert/delete calls.

    ``upsert`` returns ``{id: error}`` for vectors the provider rejected.
    """

    def __init__(self, client: httpx.AsyncClient, config: Dict[str, Any], credentials: Dict[str, Any]):
        self.client = client
        self.provider = config["provider"]
        self.index = config["indexName"]
        self.namespace = config.get("namespace") or ""
        self.url = credentials["url"]
        self.api_key = credentials.get("apiKey")

    @property
    def headers(self) -> Dict[str, str]:
        if not self.api_key:
            return {}
        if self.provider == "pinecone":
            return {"Api-Key": self.api_key}
        if self.provider == "qdrant":
            return {"api-key": self.api_key}
        return {"Authorization": f"Bearer {self.api_key}"}

    def _check(self, response: httpx.Response, action: str) -> None:
        if response.status_code >= 400:
            raise VectorBatchError(
                f"{self.provider} {action} returned HTTP {response.status_code}: {response.text[:200]}"
            )

    async def upsert(self, vectors: List[Dict[str, Any]]) -> Dict[str, str]:
        if self.provider == "pinecone":
            response = await self.client.post(
                f"{self.url}/vectors/upsert",
                json={"vectors": vectors, "namespace": self.namespace},
                headers=self.headers,
            )
            self._check(response, "upsert")
            return {}

        if self.provider == "qdrant":
            points = []
            for v in vectors:
                payload = dict(v["metadata"])
                payload["_id"] = v["id"]
                points.append({"id": point_id(v["id"]), "vector": v["values"], "payload": payload})
            response = await self.client.put(
                f"{self.url}/collections/{self.index}/points",
                params={"wait": "true"},
                json={"points": points},
                headers=self.headers,
            )
            self._check(response, "upsert")
            return {}

        objects = [
            {
                "class": self.index,
                "id": point_id(v["id"]),
                "vector": v["values"],
                "properties": {**v["metadata"], "sourceId": v["id"]},
            }
            for v in vectors
        ]
        response = await self.client.post(
            f"{self.url}/v1/batch/objects", json={"objects": objects}, headers=self.headers,
        )
        self._check(response, "upsert")
        by_uuid = {point_id(v["id"]): v["id"] for v in vectors}
        failed: Dict[str, str] = {}
        for entry in response.json() or []:
            problems = ((entry.get("result") or {}).get("errors") or {}).get("error") or []
            if problems:
                source = by_uuid.get(entry.get("id"), entry.get("id"))
                failed[source] = "; ".join(p.get("message", "") for p in problems)
        return failed

    async def delete(self, ids: List[str]) -> None:
        if not ids:
            return
        if self.provider == "pinecone":
            response = await self.client.post(
                f"{self.url}/vectors/delete",
                json={"ids": ids, "namespace": self.namespace},
                headers=self.headers,
            )
            self._check(response, "delete")
        elif self.provider == "qdrant":
            response = await self.client.post(
                f"{self.url}/collections/{self.index}/points/delete",
                params={"wait": "true"},
                json={"points": [point_id(i) for i in ids]},
                headers=self.headers,
            )
            self._check(response, "delete")
        else:
            for item_id in ids:
                response = await self.client.delete(
                    f"{self.url}/v1/objects/{self.index}/{point_id(item_id)}", headers=self.headers,
                )
                if response.status_code != 404:
                    self._check(response, "delete")
