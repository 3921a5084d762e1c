"""
In-process embeddings with HuggingFace transformers.

Any encoder checkpoint works (``sentence-transformers/all-MiniLM-L6-v2``,
``BAAI/bge-small-en-v1.5`` ...). Vectors are the attention-masked mean of
the last hidden state. Model loading is deferred until first use and
inference runs in a worker thread so the event loop keeps serving the
queue and the filesystem monitor.
"""

import asyncio

import structlog
import torch
from transformers import AutoConfig, AutoModel, AutoTokenizer

from docrepo.embedding.config import EmbeddingConfig
from docrepo.embedding.service import Embedder

logger = structlog.get_logger(__name__)


class TransformersEmbedder(Embedder):
    """
    Local encoder model with mean pooling.

    Usage:
        embedder = TransformersEmbedder("sentence-transformers/all-MiniLM-L6-v2")
        vectors = await embedder.embed(["first chunk", "second chunk"])
    """

    engine = "transformers"

    def __init__(self, model: str, config: EmbeddingConfig | None = None):
        super().__init__(model, config)
        self._model: AutoModel | None = None
        self._tokenizer: AutoTokenizer | None = None
        self._device: torch.device | None = None

    def _detect_device(self) -> torch.device:
        """Detect the best available device for inference."""
        if self._device is not None:
            return self._device

        if self._config.device != "auto":
            self._device = torch.device(self._config.device)
        elif torch.cuda.is_available():
            self._device = torch.device("cuda")
        elif torch.backends.mps.is_available():
            self._device = torch.device("mps")
        else:
            self._device = torch.device("cpu")

        logger.info("Embedding device selected", device=str(self._device))
        return self._device

    def _initialize(self) -> None:
        if self._model is not None:
            return

        device = self._detect_device()
        logger.info("Loading embedding model", model=self.model)

        tokenizer = AutoTokenizer.from_pretrained(
            self.model,
            model_max_length=self._config.max_sequence_length,
        )
        model = AutoModel.from_pretrained(self.model)
        model.to(device)
        model.eval()

        if self._config.use_fp16 and device.type == "cuda":
            model = model.half()

        self._tokenizer = tokenizer
        self._model = model

    def _embed_sync(self, texts: list[str]) -> list[list[float]]:
        self._initialize()
        device = self._detect_device()

        inputs = self._tokenizer(
            texts,
            return_tensors="pt",
            truncation=True,
            max_length=self._config.max_sequence_length,
            padding=True,
        )
        inputs = {k: v.to(device) for k, v in inputs.items()}

        with torch.no_grad():
            outputs = self._model(**inputs)

        # outputs.last_hidden_state shape: [batch, seq_len, hidden_dim]
        token_embeddings = outputs.last_hidden_state
        input_mask_expanded = (
            inputs["attention_mask"].unsqueeze(-1).expand(token_embeddings.size()).float()
        )
        sum_embeddings = torch.sum(token_embeddings * input_mask_expanded, dim=1)
        sum_mask = torch.clamp(input_mask_expanded.sum(dim=1), min=1e-9)
        embeddings = sum_embeddings / sum_mask

        return embeddings.float().cpu().numpy().tolist()

    async def embed(self, texts: list[str]) -> list[list[float]]:
        if not texts:
            return []
        return await asyncio.to_thread(self._embed_sync, texts)

    async def dimensions(self) -> int:
        config = await asyncio.to_thread(AutoConfig.from_pretrained, self.model)
        return int(config.hidden_size)

    async def close(self) -> None:
        self._model = None
        self._tokenizer = None
