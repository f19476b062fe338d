import asyncio
import logging
import re

from llama_index.core import Document, StorageContext, VectorStoreIndex
from llama_index.core.embeddings import BaseEmbedding
from llama_index.core.schema import TextNode
from llama_index.embeddings.openai import OpenAIEmbedding
from llama_index.vector_stores.qdrant import QdrantVectorStore
from qdrant_client import QdrantClient

from .cancellation import IndexerCancelledError
from .config import MODEL_DIMENSIONS
from .git import hash_file_content, list_files, read_file_bytes, repo_path
from .indexer import ProgressReporter
from .models import IndexProgress, IndexStats, IndexStatsKey, RepositoryUri, Revision
from .splitter import FileSplitter

logger = logging.getLogger(__name__)

BATCH_FILES = 50


def sanitize_collection_name(uri: str) -> str:
    return re.sub(r"[^a-zA-Z0-9]", "_", uri).strip("_")


def _fetch_existing_hashes(qdrant_client: QdrantClient, collection_name: str) -> dict[str, str]:
    hashes: dict[str, str] = {}
    offset = None
    while True:
        points, offset = qdrant_client.scroll(
            collection_name=collection_name,
            limit=250,
            offset=offset,
            with_payload=["file_path", "file_hash"],
            with_vectors=False,
        )
        for point in points:
            payload = point.payload or {}
            file_path = payload.get("file_path")
            file_hash = payload.get("file_hash")
            if file_path and file_hash:
                hashes[file_path] = file_hash
        if offset is None:
            return hashes


class ContentIndexer:
    """Embeds the files of one repository revision into a Qdrant collection.

    Files whose content hash is already stored are skipped; chunks of files
    that changed or disappeared are deleted first. Cancellation is checked
    between batches of files.
    """

    def __init__(
        self,
        uri: RepositoryUri,
        revision: Revision,
        repo_path: str,
        qdrant_client: QdrantClient,
        embed_model: BaseEmbedding,
        enable_hybrid: bool = True,
        batch_files: int = BATCH_FILES,
        splitter: FileSplitter | None = None,
    ):
        self.uri = uri
        self.revision = revision
        self.repo_path = repo_path
        self.qdrant_client = qdrant_client
        self.embed_model = embed_model
        self.enable_hybrid = enable_hybrid
        self.batch_files = batch_files
        self.collection_name = sanitize_collection_name(uri)
        self.splitter = splitter or FileSplitter()
        self._cancelled = False

    def cancel(self) -> None:
        logger.info(f"Cancel content indexing for {self.uri}@{self.revision}.")
        self._cancelled = True

    def _check_cancelled(self) -> None:
        if self._cancelled:
            raise IndexerCancelledError(f"content indexing for {self.uri} cancelled")

    def _open_index(self) -> tuple[VectorStoreIndex, dict[str, str]]:
        existing_collections = [c.name for c in self.qdrant_client.get_collections().collections]
        vector_store = QdrantVectorStore(
            client=self.qdrant_client,
            collection_name=self.collection_name,
            enable_hybrid=self.enable_hybrid,
            batch_size=20,
        )
        if self.collection_name not in existing_collections:
            storage_context = StorageContext.from_defaults(vector_store=vector_store)
            index = VectorStoreIndex(nodes=[], storage_context=storage_context, embed_model=self.embed_model)
            return index, {}
        index = VectorStoreIndex.from_vector_store(vector_store, embed_model=self.embed_model)
        return index, _fetch_existing_hashes(self.qdrant_client, self.collection_name)

    def _build_nodes(
        self,
        index: VectorStoreIndex,
        batch: list[str],
        existing_hashes: dict[str, str],
        stats: IndexStats,
    ) -> tuple[list[TextNode], int]:
        nodes: list[TextNode] = []
        failures = 0
        for rel in batch:
            raw = read_file_bytes(self.repo_path, self.revision, rel)
            if raw is None:
                failures += 1
                continue
            fhash = hash_file_content(raw)
            if existing_hashes.get(rel) == fhash:
                continue
            if rel in existing_hashes:
                index.delete_ref_doc(rel, delete_from_docstore=True)
            try:
                text = raw.decode("utf-8", errors="strict")
            except UnicodeDecodeError:
                continue
            doc = Document(
                text=text,
                doc_id=rel,
                metadata={
                    "file_path": rel,
                    "file_hash": fhash,
                    "revision": self.revision,
                },
                excluded_embed_metadata_keys=["file_hash", "revision", "file_path"],
            )
            file_nodes = self.splitter.split(doc)
            if file_nodes:
                nodes.extend(file_nodes)
                stats[IndexStatsKey.FILE_UPSERTED] += 1
        return nodes, failures

    async def start(self, progress_reporter: ProgressReporter | None = None) -> IndexStats:
        stats: IndexStats = {
            IndexStatsKey.FILE: 0,
            IndexStatsKey.FILE_UPSERTED: 0,
            IndexStatsKey.FILE_DELETED: 0,
            IndexStatsKey.CHUNK_UPSERTED: 0,
        }
        self._check_cancelled()
        index, existing_hashes = await asyncio.to_thread(self._open_index)
        all_files = await asyncio.to_thread(list_files, self.repo_path, self.revision)
        stats[IndexStatsKey.FILE] = len(all_files)
        self._check_cancelled()

        removed_files = set(existing_hashes) - set(all_files)
        for rel in removed_files:
            await asyncio.to_thread(index.delete_ref_doc, rel, delete_from_docstore=True)
        stats[IndexStatsKey.FILE_DELETED] = len(removed_files)

        total = len(all_files)
        processed = failures = 0
        for start in range(0, total, self.batch_files):
            self._check_cancelled()
            batch = all_files[start:start + self.batch_files]
            nodes, batch_failures = await asyncio.to_thread(
                self._build_nodes, index, batch, existing_hashes, stats
            )
            self._check_cancelled()
            if nodes:
                await asyncio.to_thread(index.insert_nodes, nodes)
                stats[IndexStatsKey.CHUNK_UPSERTED] += len(nodes)
            processed += len(batch)
            failures += batch_failures
            # A cancelled job's terminal record must not be overwritten by progress.
            self._check_cancelled()
            if progress_reporter is not None:
                await progress_reporter(
                    IndexProgress(
                        percentage=processed * 100 / total,
                        num_files=total,
                        num_success=processed - failures,
                        num_failure=failures,
                    )
                )

        if total == 0 and progress_reporter is not None:
            await progress_reporter(IndexProgress(percentage=100, num_files=0))
        logger.info(
            f"Content index of {self.uri}@{self.revision} done: "
            f"{stats[IndexStatsKey.FILE_UPSERTED]} files, "
            f"{stats[IndexStatsKey.CHUNK_UPSERTED]} chunks upserted, "
            f"{stats[IndexStatsKey.FILE_DELETED]} files removed."
        )
        return stats


class ContentIndexerFactory:
    def __init__(
        self,
        repos_root: str,
        qdrant_client: QdrantClient,
        embed_model: BaseEmbedding,
        enable_hybrid: bool = True,
    ):
        self.repos_root = repos_root
        self.qdrant_client = qdrant_client
        self.embed_model = embed_model
        self.enable_hybrid = enable_hybrid
        self.splitter = FileSplitter()

    @classmethod
    def from_settings(cls, settings) -> "ContentIndexerFactory":
        settings.validate_indexing()
        embed_model = OpenAIEmbedding(
            model=settings.embedding_model,
            dimensions=MODEL_DIMENSIONS[settings.embedding_model],
            api_base="https://openrouter.ai/api/v1",
            api_key=settings.api_key,
            default_headers={
                "HTTP-Referer": "https://github.com/ai-reviewer",
                "X-Title": "ai-reviewer-index-worker",
            },
        )
        return cls(settings.repos_root, QdrantClient(url=settings.qdrant_url), embed_model)

    def create(self, uri: RepositoryUri, revision: Revision) -> ContentIndexer:
        return ContentIndexer(
            uri,
            revision,
            repo_path(self.repos_root, uri),
            self.qdrant_client,
            self.embed_model,
            enable_hybrid=self.enable_hybrid,
            splitter=self.splitter,
        )
