"""
Amazon Bedrock embedding client wrapper with retry logic, error handling and a deterministic fallback.
"""

import hashlib
import json
import random
import re
import time
from typing import List, Tuple

import boto3
import numpy as np
from botocore.config import Config as BotoConfig
from botocore.exceptions import BotoCoreError, ClientError

from ..models.errors import ProviderUnavailable
from .config import BedrockEmbedConfig
from .logging_config import get_logger

logger = get_logger(__name__)

HASH_EMBEDDING_MODEL = 'hash'

_TOKEN_PATTERN = re.compile(r'\w+', re.UNICODE)


class BedrockEmbedError(ProviderUnavailable):
    """Custom exception for Bedrock embedding errors."""
    pass


class BedrockEmbed:
    """Amazon Bedrock embedding client with retry logic and error handling."""

    def __init__(self, config: BedrockEmbedConfig):
        """
        Initialize Bedrock embedding client.

        Args:
            config: BedrockEmbedConfig instance with connection parameters
        """
        self.config = config
        self.model_id = config.model_id
        self.output_embedding_length = config.dimension

        # Short timeouts so an unresponsive provider falls through to the hash embedding
        self.bedrock = boto3.client(service_name='bedrock-runtime',
                                    region_name=config.region,
                                    config=BotoConfig(connect_timeout=config.timeout,
                                                      read_timeout=config.timeout,
                                                      retries={'max_attempts': 0}))

        logger.info(f'Initialized Bedrock Embed client with model: {self.model_id}')

    def _call_with_retry(self, data: dict) -> dict:
        """
        Make a Bedrock API call with retry logic.

        Args:
            data: Request data dictionary

        Returns:
            Response dictionary from Bedrock API

        Raises:
            BedrockEmbedError: If all retry attempts fail
        """
        body = json.dumps(data)

        for attempt in range(self.config.retry_attempts):
            try:
                logger.debug(f'Bedrock Embed request attempt {attempt + 1}/{self.config.retry_attempts}')

                response = self.bedrock.invoke_model(body=body,
                                                     modelId=self.model_id,
                                                     accept='application/json',
                                                     contentType='application/json')

                result = json.loads(response.get('body').read())
                logger.debug('Bedrock Embed request successful')
                return result

            except (ClientError, BotoCoreError) as e:
                logger.warning(f'Bedrock Embed attempt {attempt + 1}/{self.config.retry_attempts} failed: {e}')

                if attempt < self.config.retry_attempts - 1:
                    # Exponential backoff with jitter
                    delay = self.config.retry_delay * (2**attempt) + random.uniform(0, 1)
                    time.sleep(delay)
                else:
                    raise BedrockEmbedError(f'Bedrock Embed failed after {self.config.retry_attempts} attempts: {e}')

            except Exception as e:
                logger.error(f'Unexpected error in Bedrock Embed: {e}')
                raise BedrockEmbedError(f'Unexpected Bedrock Embed error: {e}')

        raise BedrockEmbedError(f'Bedrock Embed failed after {self.config.retry_attempts} attempts')

    def _embed(self, text: str, input_type: str) -> List[float]:
        if not text or not text.strip():
            logger.warning(f'Empty text provided for {input_type} embedding')
            return [0.0] * self.output_embedding_length

        try:
            if 'titan' in self.model_id.lower():
                data = {'inputText': text, 'dimensions': self.output_embedding_length}
                response = self._call_with_retry(data)
                embedding = response.get('embedding')

            elif 'cohere' in self.model_id.lower():
                if self.output_embedding_length != 1024:
                    raise BedrockEmbedError(f'Cohere models only support 1024 dimensions, got {self.output_embedding_length}')

                data = {'input_type': input_type, 'texts': [text]}
                response = self._call_with_retry(data)
                embeddings = response.get('embeddings') or []
                embedding = embeddings[0] if embeddings else None

            else:
                raise BedrockEmbedError(f'Unsupported embedding model: {self.model_id}')

        except BedrockEmbedError:
            raise
        except Exception as e:
            logger.error(f'Error generating {input_type} embedding: {e}')
            raise BedrockEmbedError(f'Embedding failed: {e}')

        if not embedding or len(embedding) != self.output_embedding_length:
            raise BedrockEmbedError(f'Malformed embedding returned by {self.model_id}')
        return embedding

    def embed_document(self, text: str) -> List[float]:
        """
        Generate embeddings for document text.

        Args:
            text: Text to embed

        Returns:
            List of embedding values

        Raises:
            BedrockEmbedError: If embedding generation fails
        """
        return self._embed(text, 'search_document')

    def embed_query(self, text: str) -> List[float]:
        """
        Generate embeddings for query text.

        Args:
            text: Query text to embed

        Returns:
            List of embedding values

        Raises:
            BedrockEmbedError: If embedding generation fails
        """
        return self._embed(text, 'search_query')

    def health_check(self) -> bool:
        """
        Perform a health check on the Bedrock embedding service.

        Returns:
            True if service is healthy, False otherwise
        """
        try:
            test_embedding = self.embed_document('test')
            return len(test_embedding) == self.output_embedding_length

        except Exception as e:
            logger.error(f'Bedrock Embed health check failed: {e}')
            return False


def hash_embedding(text: str, dimension: int) -> List[float]:
    """Deterministic bag-of-words feature hashing of text into a unit vector.

    Identical texts map to identical vectors and texts sharing words point in similar
    directions, so similarity between two hash embeddings stays meaningful.

    Args:
        text: Text to embed
        dimension: Output vector length

    Returns:
        L2-normalized list of floats
    """
    vector = np.zeros(dimension, dtype=np.float64)
    tokens = _TOKEN_PATTERN.findall(text.lower()) or [text]

    for token in tokens:
        digest = hashlib.sha256(token.encode('utf-8')).digest()
        index = int.from_bytes(digest[:8], 'big') % dimension
        sign = 1.0 if digest[8] & 1 else -1.0
        vector[index] += sign

    norm = np.linalg.norm(vector)
    if norm > 0:
        vector = vector / norm
    return vector.tolist()


class FallbackEmbedder:
    """Embedding provider that never fails: Bedrock first, hash embedding when Bedrock is unavailable."""

    def __init__(self, embed: BedrockEmbed, dimension: int):
        self.embed = embed
        self.dimension = dimension

    @property
    def model_id(self) -> str:
        return self.embed.model_id

    def embed_document(self, text: str) -> Tuple[List[float], str]:
        """Embed text for storage.

        Returns:
            Tuple of (embedding, model id that produced it)
        """
        try:
            return self.embed.embed_document(text), self.embed.model_id
        except ProviderUnavailable as e:
            logger.warning(f'Embedding provider unavailable, using hash embedding: {e}')
            return hash_embedding(text, self.dimension), HASH_EMBEDDING_MODEL

    def embed_query(self, text: str) -> Tuple[List[float], str]:
        """Embed a search query.

        Returns:
            Tuple of (embedding, model id that produced it)
        """
        try:
            return self.embed.embed_query(text), self.embed.model_id
        except ProviderUnavailable as e:
            logger.warning(f'Embedding provider unavailable, using hash embedding for query: {e}')
            return hash_embedding(text, self.dimension), HASH_EMBEDDING_MODEL

    def health_check(self) -> bool:
        return self.embed.health_check()
