import io
import re
import json
import pathlib
import logging
from typing import Any, Dict, Iterator, List, Optional

import numpy as np
import faiss
import tiktoken
from openai import AzureOpenAI, OpenAI

import config
from security import get_azure_openai_token_provider

logger = logging.getLogger("rag_chat.rag")

# Optional loaders
try:
    from pypdf import PdfReader
except ImportError:
    PdfReader = None

try:
    import docx  # python-docx
except ImportError:
    docx = None


ALLOWED_EXTS = {".txt", ".md", ".markdown", ".pdf", ".docx", ".html", ".htm"}

RAG_SYSTEM_PROMPT = """You are an expert assistant helping users by answering questions based exclusively on the provided source documents. Use ONLY the information contained in the sources. Do NOT fabricate or guess answers beyond the data available.

Your answers must be:
- Complete and detailed, explaining the concepts clearly.
- Professional and confident, with an expert tone.
- Helpful and engaging, offering additional insights, suggestions for further research, or clarifying questions when appropriate.
- Always include precise references to the source documents you used, using the format "[filename]" immediately after the relevant information.
- If the sources do not contain enough information to answer fully, politely acknowledge the limitation, suggest possible directions for further research, and offer to assist with related questions.
- Provide 3 brief and relevant follow-up questions the user might want to ask next. Enclose them in double angle brackets, like so:
<<What are the main benefits of this approach?>>
<<Can you provide examples from the documents?>>
<<How can I apply this in practice?>>
If the answer cannot be found in the sources or chat history, say politely that you don't have that information.

The source documents are formatted as: "[filename]: information".

Answer ONLY in plain text, without any Markdown or special formatting.

Use the same language as the user's question.

Do not repeat questions that have already been asked.
Make sure the last question ends with ">>".

SOURCES:
{context}"""

TITLE_SYSTEM_PROMPT = (
    "Create a title for this chat session, based on the user question. "
    "The title should be less than 32 characters. Do NOT use double-quotes."
)

USER_PROMPT_TEMPLATE = "Context:\n{chat_history}\n\nQuestion:\n{input}"


# -----------------------------
# Model clients
# -----------------------------
def openai_client() -> OpenAI:
    if config.AZURE_OPENAI_API_ENDPOINT:
        return AzureOpenAI(
            azure_endpoint=config.AZURE_OPENAI_API_ENDPOINT,
            api_version=config.AZURE_OPENAI_API_VERSION,
            azure_ad_token_provider=get_azure_openai_token_provider(),
        )
    # Ollama serves an OpenAI-compatible API; the key is required but ignored.
    return OpenAI(base_url=config.OLLAMA_BASE_URL, api_key="ollama")


def chat_model() -> str:
    if config.AZURE_OPENAI_API_ENDPOINT:
        return config.AZURE_OPENAI_API_DEPLOYMENT_NAME
    return config.OLLAMA_CHAT_MODEL


def embeddings_model() -> str:
    if config.AZURE_OPENAI_API_ENDPOINT:
        return config.AZURE_OPENAI_API_EMBEDDINGS_DEPLOYMENT_NAME
    return config.OLLAMA_EMBEDDINGS_MODEL


def temperature() -> float:
    return 0.0 if config.AZURE_OPENAI_API_ENDPOINT else 0.7


def embed_texts(client: OpenAI, texts: List[str]) -> np.ndarray:
    # Batches embeddings; returns float32 matrix [n, dim]
    vectors: List[List[float]] = []
    batch_size = 64

    for i in range(0, len(texts), batch_size):
        batch = texts[i : i + batch_size]
        resp = client.embeddings.create(model=embeddings_model(), input=batch)
        for item in resp.data:
            vectors.append(item.embedding)

    arr = np.array(vectors, dtype="float32")
    # Normalize for cosine similarity using inner product
    faiss.normalize_L2(arr)
    return arr


# -----------------------------
# Document text
# -----------------------------
def clean_text(s: str) -> str:
    s = s.replace("\x00", " ")
    s = re.sub(r"[ \t]+", " ", s)
    s = re.sub(r"\n{3,}", "\n\n", s)
    return s.strip()


def get_tokenizer():
    return tiktoken.get_encoding("cl100k_base")


def chunk_by_tokens(text: str, chunk_tokens: int, overlap: int) -> List[str]:
    text = clean_text(text)
    if not text:
        return []

    enc = get_tokenizer()
    tokens = enc.encode(text)

    chunks = []
    start = 0
    n = len(tokens)

    while start < n:
        end = min(start + chunk_tokens, n)
        chunk_text = enc.decode(tokens[start:end]).strip()
        if chunk_text:
            chunks.append(chunk_text)
        if end == n:
            break
        start = max(0, end - overlap)

    return chunks


def extract_text_from_bytes(filename: str, data: bytes) -> str:
    ext = pathlib.Path(filename).suffix.lower()

    if ext in {".txt", ".md", ".markdown"}:
        try:
            return data.decode("utf-8")
        except UnicodeDecodeError:
            return data.decode("utf-8", errors="ignore")

    if ext in {".html", ".htm"}:
        html = data.decode("utf-8", errors="ignore")
        html = re.sub(r"(?is)<(script|style).*?>.*?</\1>", " ", html)
        html = re.sub(r"(?is)<br\s*/?>", "\n", html)
        html = re.sub(r"(?is)</p\s*>", "\n\n", html)
        html = re.sub(r"(?is)<.*?>", " ", html)
        return clean_text(html)

    if ext == ".pdf":
        if PdfReader is None:
            raise RuntimeError("PDF support not available. Install pypdf.")
        reader = PdfReader(io.BytesIO(data))
        return clean_text("\n\n".join(page.extract_text() or "" for page in reader.pages))

    if ext == ".docx":
        if docx is None:
            raise RuntimeError("DOCX support not available. Install python-docx.")
        d = docx.Document(io.BytesIO(data))
        return clean_text("\n".join(p.text for p in d.paragraphs if p.text and p.text.strip()))

    raise ValueError(f"Unsupported document type: {ext or filename}")


# -----------------------------
# Vector index
# -----------------------------
class RagIndex:
    def __init__(self, folder: Optional[pathlib.Path] = None):
        self.folder = pathlib.Path(folder or config.FAISS_STORE_FOLDER)
        self.index: Optional[faiss.Index] = None
        self.meta: List[Dict[str, Any]] = []
        self.dim: Optional[int] = None

    @property
    def index_path(self) -> pathlib.Path:
        return self.folder / "index.faiss"

    @property
    def meta_path(self) -> pathlib.Path:
        return self.folder / "metadata.jsonl"

    def is_ready(self) -> bool:
        return self.index is not None and self.dim is not None and len(self.meta) > 0

    def load(self) -> bool:
        if not (self.index_path.exists() and self.meta_path.exists()):
            logger.info("No vector index found in %s", self.folder)
            return False
        self.index = faiss.read_index(str(self.index_path))
        self.meta = []
        with self.meta_path.open("r", encoding="utf-8") as f:
            for line in f:
                line = line.strip()
                if line:
                    self.meta.append(json.loads(line))
        self.dim = self.index.d
        logger.info("Loaded vector index with %d chunks from %s", len(self.meta), self.folder)
        return True

    def save(self) -> None:
        if self.index is None:
            raise RuntimeError("No index to save")
        self.folder.mkdir(parents=True, exist_ok=True)
        faiss.write_index(self.index, str(self.index_path))
        with self.meta_path.open("w", encoding="utf-8") as f:
            for m in self.meta:
                f.write(json.dumps(m, ensure_ascii=False) + "\n")

    def add_documents(self, chunks: List[Dict[str, Any]], vectors: np.ndarray) -> None:
        """Appends chunk metadata ({"source", "chunk_id", "text"}) with their vectors and saves."""
        if len(chunks) != vectors.shape[0]:
            raise ValueError("chunks and vectors must have the same length")
        if not chunks:
            return
        if self.index is None:
            self.dim = int(vectors.shape[1])
            self.index = faiss.IndexFlatIP(self.dim)
        elif vectors.shape[1] != self.dim:
            raise ValueError(f"Embedding dimension {vectors.shape[1]} does not match index ({self.dim})")
        self.index.add(vectors)
        self.meta.extend(chunks)
        self.save()

    def search(self, query: str, k: int) -> List[Dict[str, Any]]:
        if not self.is_ready():
            return []

        qv = embed_texts(openai_client(), [query])
        D, I = self.index.search(qv, k)
        hits = []
        for score, idx in zip(D[0].tolist(), I[0].tolist()):
            if idx < 0 or idx >= len(self.meta):
                continue
            m = dict(self.meta[idx])
            m["score"] = float(score)
            hits.append(m)
        return hits


def check_document_type(filename: str) -> None:
    ext = pathlib.Path(filename).suffix.lower()
    if ext not in ALLOWED_EXTS:
        raise ValueError(f"Unsupported document type: {ext or filename}")


def ingest_document(index: RagIndex, filename: str, data: bytes) -> Dict[str, Any]:
    check_document_type(filename)

    text = extract_text_from_bytes(filename, data)
    chunks = chunk_by_tokens(text, config.CHUNK_TOKENS, config.CHUNK_OVERLAP)
    if not chunks:
        return {"source": filename, "chunks": 0}

    vectors = embed_texts(openai_client(), chunks)
    index.add_documents(
        [{"source": filename, "chunk_id": i, "text": chunk} for i, chunk in enumerate(chunks)],
        vectors,
    )
    logger.info("Indexed %s: %d chunks", filename, len(chunks))
    return {"source": filename, "chunks": len(chunks)}


# -----------------------------
# Generation
# -----------------------------
def build_context(hits: List[Dict[str, Any]]) -> str:
    return "".join(f"[{h.get('source', 'unknown')}]: {h.get('text', '')}\n" for h in hits)


def build_chat_messages(question: str, history_text: str, hits: List[Dict[str, Any]]) -> List[Dict[str, str]]:
    return [
        {"role": "system", "content": RAG_SYSTEM_PROMPT.replace("{context}", build_context(hits))},
        {"role": "user", "content": USER_PROMPT_TEMPLATE.format(chat_history=history_text, input=question)},
    ]


def _iter_content(stream) -> Iterator[str]:
    for event in stream:
        if not event.choices:
            continue
        content = event.choices[0].delta.content
        if content:
            yield content


def stream_chat_completion(question: str, history_text: str, hits: List[Dict[str, Any]]) -> Iterator[str]:
    """Opens the completion stream right away so connection errors surface before any response is sent."""
    client = openai_client()
    stream = client.chat.completions.create(
        model=chat_model(),
        messages=build_chat_messages(question, history_text, hits),
        temperature=temperature(),
        stream=True,
    )
    return _iter_content(stream)


def generate_title(question: str) -> str:
    client = openai_client()
    resp = client.chat.completions.create(
        model=chat_model(),
        messages=[
            {"role": "system", "content": TITLE_SYSTEM_PROMPT},
            {"role": "user", "content": question},
        ],
        temperature=temperature(),
    )
    title = (resp.choices[0].message.content or "").strip().replace('"', "")
    return title[:31]
