"""
ELF Embeddings -- text-to-vector providers for semantic search.

Provides:
- OnnxEmbeddingProvider: all-MiniLM-L6-v2 via ONNX Runtime, falling back to
  SentenceTransformers (PyTorch) when the ONNX model is not downloaded
- HashEmbeddingProvider: deterministic pseudo-embedding (tests, ELF_SKIP_EMBEDDINGS=1)
- get_default_provider() picking one of the above

Providers are synchronous and pure; EmbeddingCache wraps them for reuse and
async access.
"""

import hashlib
import logging
import math
import os
import random
import threading
from pathlib import Path
from typing import List, Optional

import numpy as np

from elfmem.config import EMBEDDING_DIM

__all__ = [
    "EmbeddingError",
    "EmbeddingProvider",
    "OnnxEmbeddingProvider",
    "HashEmbeddingProvider",
    "get_default_provider",
]

logger = logging.getLogger("elfmem.embeddings")

_MODEL_NAME = "all-MiniLM-L6-v2"
_ST_MODEL_NAME = "sentence-transformers/all-MiniLM-L6-v2"
_ONNX_DEFAULT_DIR = "~/.cache/elf/models/all-MiniLM-L6-v2-onnx"


class EmbeddingError(RuntimeError):
    """Raised when no embedding backend can produce a vector."""


class EmbeddingProvider:
    """Interface: ``init()`` warms the backend (idempotent), ``embed(text)`` returns a vector."""

    dimension: int = EMBEDDING_DIM
    name: str = "base"

    def init(self) -> None:
        pass

    def embed(self, text: str) -> List[float]:
        raise NotImplementedError


def _onnx_encode(tokenizer, session, texts: List[str]) -> np.ndarray:
    """Encode texts using ONNX Runtime. Returns mean-pooled, L2-normalized embeddings."""
    batch = tokenizer.encode_batch(texts)
    ids = np.array([b.ids for b in batch], dtype=np.int64)
    mask = np.array([b.attention_mask for b in batch], dtype=np.int64)
    feed = {"input_ids": ids, "attention_mask": mask}
    input_names = {i.name for i in session.get_inputs()}
    if "token_type_ids" in input_names:
        feed["token_type_ids"] = np.zeros_like(ids)
    outputs = session.run(None, feed)
    embeddings = outputs[0]
    if embeddings.ndim == 3:
        mask_expanded = mask[:, :, np.newaxis].astype(np.float32)
        sum_emb = np.sum(embeddings * mask_expanded, axis=1)
        sum_mask = np.clip(np.sum(mask_expanded, axis=1), a_min=1e-9, a_max=None)
        embeddings = sum_emb / sum_mask
    norms = np.linalg.norm(embeddings, axis=1, keepdims=True)
    return embeddings / np.clip(norms, a_min=1e-9, a_max=None)


class OnnxEmbeddingProvider(EmbeddingProvider):
    """Lazy-loading sentence embedder.

    Priority: ONNX Runtime (~90MB) > SentenceTransformer (~1GB PyTorch).
    The model is loaded once on first ``init()`` or ``embed()``; a failed
    load is not retried within the same process.
    """

    name = _MODEL_NAME

    def __init__(self, model_dir: Optional[str] = None, dimension: int = EMBEDDING_DIM):
        self.dimension = dimension
        self._model_dir = model_dir
        self._model = None
        self._backend: Optional[str] = None
        self._load_attempted = False
        self._load_lock = threading.Lock()

    @property
    def backend(self) -> Optional[str]:
        return self._backend

    def _resolve_model_dir(self) -> Optional[Path]:
        candidates = []
        if self._model_dir:
            candidates.append(self._model_dir)
        env_dir = os.environ.get("ELF_ONNX_MODEL_DIR")
        if env_dir:
            candidates.append(env_dir)
        candidates.append(_ONNX_DEFAULT_DIR)
        for c in candidates:
            path = Path(os.path.expanduser(c))
            if (path / "model.onnx").exists() and (path / "tokenizer.json").exists():
                return path
        return None

    def _load_onnx(self, model_dir: Path) -> bool:
        try:
            import contextlib
            import io

            import onnxruntime as ort
            from tokenizers import Tokenizer as FastTokenizer

            tokenizer = FastTokenizer.from_file(str(model_dir / "tokenizer.json"))
            tokenizer.enable_padding(pad_id=0, pad_token="[PAD]")
            tokenizer.enable_truncation(max_length=256)
            sess_opts = ort.SessionOptions()
            sess_opts.log_severity_level = 4
            sess_opts.enable_cpu_mem_arena = False
            with contextlib.redirect_stderr(io.StringIO()):
                session = ort.InferenceSession(
                    str(model_dir / "model.onnx"),
                    sess_options=sess_opts,
                    providers=["CPUExecutionProvider"],
                )
            self._model = (tokenizer, session)
            self._backend = "onnx"
            logger.info("Loaded ONNX embedding model from %s", model_dir)
            return True
        except Exception as e:
            logger.warning("Failed to load ONNX model: %s", e)
            return False

    def _load_sentence_transformers(self) -> bool:
        try:
            from sentence_transformers import SentenceTransformer

            self._model = SentenceTransformer(_ST_MODEL_NAME)
            self._backend = "sentence-transformers"
            logger.info("Loaded sentence-transformers model (PyTorch fallback)")
            return True
        except ImportError:
            return False
        except Exception as e:
            logger.warning("Failed to load sentence-transformers: %s", e)
            return False

    def init(self) -> None:
        if self._model is not None:
            return
        with self._load_lock:
            if self._model is not None:
                return
            if self._load_attempted:
                raise EmbeddingError("embedding model failed to load earlier in this process")
            self._load_attempted = True
            os.environ.setdefault("TQDM_DISABLE", "1")

            model_dir = self._resolve_model_dir()
            if model_dir is not None and self._load_onnx(model_dir):
                return
            if self._load_sentence_transformers():
                return
            raise EmbeddingError(
                f"No embedding backend available (ONNX model dir: {model_dir}). "
                f"Download {_MODEL_NAME} to {_ONNX_DEFAULT_DIR} or install sentence-transformers."
            )

    def embed(self, text: str) -> List[float]:
        self.init()
        try:
            if self._backend == "onnx":
                tokenizer, session = self._model
                vec = _onnx_encode(tokenizer, session, [text])[0]
            else:
                vec = self._model.encode(text, normalize_embeddings=True)
        except Exception as e:
            raise EmbeddingError(f"embedding generation failed: {e}") from e
        if len(vec) != self.dimension:
            raise EmbeddingError(f"model returned {len(vec)} dims, expected {self.dimension}")
        return [float(x) for x in vec]


class HashEmbeddingProvider(EmbeddingProvider):
    """Deterministic pseudo-embedding from text hash. Not semantically meaningful."""

    name = "hash-fallback"

    def __init__(self, dimension: int = EMBEDDING_DIM):
        self.dimension = dimension

    def embed(self, text: str) -> List[float]:
        hash_digest = hashlib.md5(text.encode()).digest()
        seed = int.from_bytes(hash_digest[:4], byteorder="big")
        rng = random.Random(seed)
        vector = [rng.gauss(0, 1) for _ in range(self.dimension)]
        magnitude = math.sqrt(sum(x * x for x in vector))
        if magnitude == 0:
            return [1.0 / math.sqrt(self.dimension)] * self.dimension
        return [x / magnitude for x in vector]


def get_default_provider() -> EmbeddingProvider:
    """Return the provider for this process: hash fallback when ELF_SKIP_EMBEDDINGS=1."""
    if os.environ.get("ELF_SKIP_EMBEDDINGS") == "1":
        logger.info("Skipping embedding model load (ELF_SKIP_EMBEDDINGS=1)")
        return HashEmbeddingProvider()
    return OnnxEmbeddingProvider()
