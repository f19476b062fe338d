import logging
from pathlib import Path

from llama_index.core import Document
from llama_index.core.node_parser import CodeSplitter, NodeParser, SentenceSplitter
from llama_index.core.schema import TextNode

logger = logging.getLogger(__name__)

LANGUAGE_EXTENSIONS: dict[str, tuple[str, ...]] = {
    "python": (".py",),
    "javascript": (".js", ".jsx", ".mjs"),
    "typescript": (".ts",),
    "tsx": (".tsx",),
    "go": (".go",),
    "rust": (".rs",),
    "java": (".java",),
    "kotlin": (".kt",),
    "scala": (".scala",),
    "c": (".c", ".h"),
    "cpp": (".cpp", ".cc", ".cxx", ".hpp"),
    "c_sharp": (".cs",),
    "ruby": (".rb",),
    "php": (".php",),
    "swift": (".swift",),
}

EXTENSION_TO_LANGUAGE = {ext: lang for lang, exts in LANGUAGE_EXTENSIONS.items() for ext in exts}


class FileSplitter:
    """Chunks repository files for embedding.

    Source files in a known language are split along syntax by tree-sitter;
    everything else, and any language whose grammar cannot be loaded, falls
    back to sentence chunks. One parser is kept per language for the life of
    the splitter.
    """

    def __init__(
        self,
        chunk_lines: int = 40,
        chunk_lines_overlap: int = 5,
        max_chars: int = 1500,
        text_chunk_size: int = 512,
        text_chunk_overlap: int = 64,
    ):
        self.chunk_lines = chunk_lines
        self.chunk_lines_overlap = chunk_lines_overlap
        self.max_chars = max_chars
        self._text_splitter = SentenceSplitter(chunk_size=text_chunk_size, chunk_overlap=text_chunk_overlap)
        self._code_splitters: dict[str, CodeSplitter] = {}
        self._unsupported: set[str] = set()

    def _code_splitter(self, language: str) -> CodeSplitter | None:
        if language in self._unsupported:
            return None
        if language not in self._code_splitters:
            try:
                self._code_splitters[language] = CodeSplitter(
                    language=language,
                    chunk_lines=self.chunk_lines,
                    chunk_lines_overlap=self.chunk_lines_overlap,
                    max_chars=self.max_chars,
                )
            except Exception as e:
                logger.warning(f"No {language} parser, using sentence chunks: {e}")
                self._unsupported.add(language)
                return None
        return self._code_splitters[language]

    @staticmethod
    def _chunks(parser: NodeParser, doc: Document) -> list[TextNode]:
        return [n for n in parser.get_nodes_from_documents([doc]) if n.get_content().strip()]

    def split(self, doc: Document) -> list[TextNode]:
        file_path = doc.metadata.get("file_path", doc.doc_id)
        language = EXTENSION_TO_LANGUAGE.get(Path(file_path).suffix.lower())
        splitter = self._code_splitter(language) if language else None
        if splitter is not None:
            try:
                chunks = self._chunks(splitter, doc)
                if chunks:
                    return chunks
            except Exception as e:
                # e.g. syntax the grammar rejects
                logger.debug(f"Code splitting {file_path} failed: {e}")
        return self._chunks(self._text_splitter, doc)
