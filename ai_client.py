"""
Clients for the external AI services used by the enrichment pipeline.

- ``ChatClient``: OpenAI-compatible ``/v1/chat/completions``.
- Embedders: one per service flavor (``ollama``, ``openai``) plus a
  ``local`` sentence-transformers model. Each flavor owns the adapter that
  pulls the vector out of its response, so callers never see the shape.
- ``parse_json_response``: strict JSON first, heuristic fallback second,
  returned as ``Structured`` or ``Heuristic`` so callers know which one
  they got.
"""

import json
import logging
import re
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Union

import httpx

from config import Settings
from exceptions import AIServiceError, ConfigurationError

logger = logging.getLogger(__name__)

FENCE_PATTERN = re.compile(r'```(?:json|JSON)?\s*\n?(.*?)\n?```', re.DOTALL)


# ─── Response parsing ──────────────────────────────────────────

@dataclass
class Structured:
    """Data parsed from a well-formed JSON response."""
    data: Dict[str, Any]
    reliable = True


@dataclass
class Heuristic:
    """Best-effort data extracted from a response that was not valid JSON."""
    data: Dict[str, Any]
    reliable = False


ParsedResponse = Union[Structured, Heuristic]


def strip_code_fences(text: str) -> str:
    """Return the body of the first fenced block, or the trimmed text."""
    clean = (text or '').strip()
    match = FENCE_PATTERN.search(clean)
    if match:
        return match.group(1).strip()
    return clean


def parse_json_response(content: str,
                        fallback: Callable[[str], Dict[str, Any]]) -> ParsedResponse:
    """Parse ``content`` as a JSON object, falling back to ``fallback(content)``."""
    try:
        data = json.loads(strip_code_fences(content))
    except (json.JSONDecodeError, TypeError):
        data = None
    if isinstance(data, dict):
        return Structured(data)
    logger.debug("AI response was not a JSON object, using heuristic extraction")
    return Heuristic(fallback(content or ''))


# ─── Chat completions ──────────────────────────────────────────

class ChatClient:
    """Minimal chat-completion client for an OpenAI-compatible gateway."""

    def __init__(self, api_key: Optional[str], base_url: str, model: str,
                 timeout: float = 60.0, client: Optional[httpx.Client] = None):
        self.api_key = api_key
        self.base_url = (base_url or '').rstrip('/')
        self.model = model
        self.client = client or httpx.Client(timeout=timeout)

    @classmethod
    def from_settings(cls, settings: Settings, client: Optional[httpx.Client] = None) -> 'ChatClient':
        return cls(
            api_key=settings.ai_api_key,
            base_url=settings.ai_base_url,
            model=settings.ai_chat_model,
            timeout=settings.http_timeout,
            client=client,
        )

    def ensure_configured(self) -> None:
        missing = []
        if not self.api_key:
            missing.append('AI_API_KEY')
        if not self.base_url:
            missing.append('AI_BASE_URL')
        if missing:
            raise ConfigurationError(f"Missing required environment variables: {', '.join(missing)}")

    def complete(self, messages: List[Dict[str, str]], temperature: Optional[float] = None) -> str:
        """Send one chat request and return the first choice's content."""
        payload: Dict[str, Any] = {'model': self.model, 'messages': messages}
        if temperature is not None:
            payload['temperature'] = temperature

        try:
            response = self.client.post(
                f"{self.base_url}/v1/chat/completions",
                json=payload,
                headers={'Authorization': f'Bearer {self.api_key}'},
            )
        except httpx.TimeoutException as e:
            raise AIServiceError("AI API timed out", 504) from e
        except httpx.HTTPError as e:
            raise AIServiceError(f"AI API unreachable: {e}") from e

        if not response.is_success:
            raise AIServiceError(f"AI API error: {response.status_code} - {response.text[:200]}")

        try:
            return response.json()['choices'][0]['message']['content']
        except (ValueError, KeyError, IndexError, TypeError) as e:
            raise AIServiceError(f"Unexpected AI API response: {e!r}") from e

    def close(self) -> None:
        self.client.close()


# ─── Embeddings ────────────────────────────────────────────────

def _ollama_vector(data: Dict[str, Any]) -> Optional[List[float]]:
    embeddings = data.get('embeddings')
    if isinstance(embeddings, list) and embeddings:
        return embeddings[0]
    return None


def _openai_vector(data: Dict[str, Any]) -> Optional[List[float]]:
    items = data.get('data')
    if isinstance(items, list) and items and isinstance(items[0], dict):
        return items[0].get('embedding')
    return None


# flavor -> (endpoint path, response adapter)
EMBEDDING_FLAVORS = {
    'ollama': ('/api/embed', _ollama_vector),
    'openai': ('/v1/embeddings', _openai_vector),
}


def extract_embedding(flavor: str, data: Any) -> List[float]:
    """Pull the vector out of an embedding response for ``flavor``."""
    if flavor not in EMBEDDING_FLAVORS:
        raise ConfigurationError(f"Unknown embedding flavor: {flavor}")
    _, adapter = EMBEDDING_FLAVORS[flavor]
    vector = adapter(data) if isinstance(data, dict) else None
    if not isinstance(vector, list) or not vector:
        raise AIServiceError("No embedding in response")
    try:
        return [float(value) for value in vector]
    except (TypeError, ValueError) as e:
        raise AIServiceError(f"Embedding contains non-numeric values: {e}") from e


class HTTPEmbedder:
    """Embedding client for a remote service of a given flavor."""

    def __init__(self, flavor: str, base_url: Optional[str], model: str,
                 api_key: Optional[str] = None, timeout: float = 60.0,
                 client: Optional[httpx.Client] = None):
        if flavor not in EMBEDDING_FLAVORS:
            raise ConfigurationError(f"Unknown embedding flavor: {flavor}")
        self.flavor = flavor
        self.base_url = (base_url or '').rstrip('/')
        self.model = model
        self.api_key = api_key
        self.client = client or httpx.Client(timeout=timeout)

    def ensure_configured(self) -> None:
        missing = []
        if not self.base_url:
            missing.append('EMBEDDING_BASE_URL')
        if self.flavor == 'openai' and not self.api_key:
            missing.append('EMBEDDING_API_KEY')
        if missing:
            raise ConfigurationError(f"Missing required environment variables: {', '.join(missing)}")

    def embed(self, text: str) -> List[float]:
        path, _ = EMBEDDING_FLAVORS[self.flavor]
        headers = {'Authorization': f'Bearer {self.api_key}'} if self.api_key else {}
        try:
            response = self.client.post(
                f"{self.base_url}{path}",
                json={'model': self.model, 'input': text},
                headers=headers,
            )
        except httpx.TimeoutException as e:
            raise AIServiceError("Embedding API timed out", 504) from e
        except httpx.HTTPError as e:
            raise AIServiceError(f"Embedding API unreachable: {e}") from e

        if not response.is_success:
            raise AIServiceError(f"Embedding API error: {response.status_code} - {response.text[:200]}")

        try:
            data = response.json()
        except ValueError as e:
            raise AIServiceError(f"Embedding API returned invalid JSON: {e}") from e
        return extract_embedding(self.flavor, data)

    def close(self) -> None:
        self.client.close()


class LocalEmbedder:
    """In-process sentence-transformers embeddings."""

    def __init__(self, model: str = 'all-MiniLM-L6-v2'):
        self.flavor = 'local'
        self.model = model
        self.embedding_model = None  # Will be loaded on first use
        self.stop_words = None

    def ensure_configured(self) -> None:
        if not self.model:
            raise ConfigurationError("Missing required environment variables: EMBEDDING_MODEL")

    def get_embedding_model(self):
        """Lazy load the embedding model."""
        if self.embedding_model is None:
            from sentence_transformers import SentenceTransformer
            self.embedding_model = SentenceTransformer(self.model)
        return self.embedding_model

    def _get_stop_words(self) -> set:
        if self.stop_words is None:
            import nltk
            from nltk.corpus import stopwords
            try:
                nltk.data.find('corpora/stopwords')
            except LookupError:
                nltk.download('stopwords', quiet=True)
            self.stop_words = set(stopwords.words('english'))
        return self.stop_words

    def preprocess_text(self, text: str) -> str:
        """Lower-case, tokenize and drop stopwords."""
        if not text:
            return ""

        try:
            import nltk
            from nltk.tokenize import word_tokenize
            try:
                nltk.data.find('tokenizers/punkt')
            except LookupError:
                nltk.download('punkt', quiet=True)

            tokens = word_tokenize(str(text).lower())
            stop_words = self._get_stop_words()
            return ' '.join(word for word in tokens if word.isalnum() and word not in stop_words)

        except LookupError as e:
            logger.warning("NLTK data unavailable, using simple preprocessing: %s", e)
            return str(text).lower().strip()

    def embed(self, text: str) -> List[float]:
        preprocessed = self.preprocess_text(text)
        if not preprocessed:
            raise AIServiceError("Nothing to embed after preprocessing", 422)
        embedding = self.get_embedding_model().encode(preprocessed, convert_to_numpy=True)
        return [float(value) for value in embedding]

    def close(self) -> None:
        pass


Embedder = Union[HTTPEmbedder, LocalEmbedder]


def build_embedder(settings: Settings, client: Optional[httpx.Client] = None) -> Embedder:
    """Select the embedding backend named by ``EMBEDDING_FLAVOR``."""
    flavor = settings.embedding_flavor.lower()
    if flavor == 'local':
        return LocalEmbedder(settings.embedding_model)
    return HTTPEmbedder(
        flavor=flavor,
        base_url=settings.embedding_base_url,
        model=settings.embedding_model,
        api_key=settings.embedding_api_key,
        timeout=settings.http_timeout,
        client=client,
    )
