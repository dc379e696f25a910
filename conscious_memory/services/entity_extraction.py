"""
Entity Extraction Service turning memory text into typed entities and relationships.
"""

import json
from typing import Any, Dict, List

from pydantic import BaseModel, ConfigDict, Field
from pydantic import ValidationError as SchemaError

from ..models.core import ExtractedEntity, ExtractedRelationship, ExtractionResult
from ..models.errors import ProviderUnavailable
from ..utils.bedrock_llm import BedrockLLM, BedrockLLMError
from ..utils.json_utils import clean_json_response
from ..utils.logging_config import get_logger

logger = get_logger(__name__)

SYSTEM_PROMPT = """You are an expert knowledge extraction system. Extract entities and the relationships between them from a short note.

Focus on:
- People, organizations, technologies, concepts, projects, places and events
- Actions, relationships and connections between those entities

Return ONLY valid JSON in this exact format:
```json
{
  "entities": [
    {"id": "unique_id", "label": "Person|Technology|Concept|Organization|Project|Place|Event", "properties": {"name": "...", "description": "..."}}
  ],
  "relationships": [
    {"sourceEntityId": "entity1_id", "targetEntityId": "entity2_id", "type": "WORKS_ON|USES|RELATES_TO", "properties": {}}
  ]
}
```

Only extract entities that are explicitly mentioned. Do not infer or assume entities.
Return {"entities": [], "relationships": []} if nothing can be extracted."""  # noqa: E501


class EntityExtractionError(ProviderUnavailable):
    """Custom exception for entity extraction errors."""
    pass


class _EntityPayload(BaseModel):
    model_config = ConfigDict(extra='ignore')

    id: str = Field(min_length=1)
    label: str = Field(min_length=1)
    properties: Dict[str, Any] = Field(default_factory=dict)


class _RelationshipPayload(BaseModel):
    model_config = ConfigDict(extra='ignore', populate_by_name=True)

    source_entity_id: str = Field(alias='sourceEntityId', min_length=1)
    target_entity_id: str = Field(alias='targetEntityId', min_length=1)
    type: str = Field(min_length=1)
    properties: Dict[str, Any] = Field(default_factory=dict)


class _ExtractionPayload(BaseModel):
    model_config = ConfigDict(extra='ignore')

    entities: List[_EntityPayload] = Field(default_factory=list)
    relationships: List[_RelationshipPayload] = Field(default_factory=list)


def _scalar_properties(properties: Dict[str, Any]) -> Dict[str, Any]:
    """Keep only property values a graph store can hold as-is."""
    result = {}
    for key, value in properties.items():
        if value is None:
            continue
        if isinstance(value, (str, bool, int, float)):
            result[str(key)] = value
        elif isinstance(value, list) and all(isinstance(v, (str, bool, int, float)) for v in value):
            result[str(key)] = ', '.join(str(v) for v in value)
    return result


def parse_extraction(response: str) -> ExtractionResult:
    """Parse a raw model response into an ExtractionResult.

    Wrapping artifacts (code fences, surrounding prose) are stripped first. Anything that is not
    valid JSON of the expected shape yields an empty result. Relationships referring to entities
    that were not extracted are dropped.

    Args:
        response: Raw LLM output

    Returns:
        Parsed extraction result, empty on any mismatch
    """
    try:
        payload = _ExtractionPayload.model_validate(json.loads(clean_json_response(response)))
    except (json.JSONDecodeError, SchemaError, TypeError) as e:
        logger.warning(f'Discarding malformed extraction output: {e}')
        return ExtractionResult()

    entities = []
    seen_ids = set()
    for item in payload.entities:
        if item.id in seen_ids:
            continue
        seen_ids.add(item.id)
        entities.append(ExtractedEntity(id=item.id, label=item.label.strip(), properties=_scalar_properties(item.properties)))

    relationships = [
        ExtractedRelationship(source_entity_id=item.source_entity_id,
                              target_entity_id=item.target_entity_id,
                              type=item.type.strip(),
                              properties=_scalar_properties(item.properties)) for item in payload.relationships
        if item.source_entity_id in seen_ids and item.target_entity_id in seen_ids
    ]

    return ExtractionResult(entities=entities, relationships=relationships)


class EntityExtractor:
    """Extract entities and relationships from memory text using a Bedrock LLM."""

    def __init__(self, llm: BedrockLLM):
        """
        Initialize the entity extractor.

        Args:
            llm: Bedrock LLM client used for extraction
        """
        self.llm = llm
        logger.info('Initialized EntityExtractor')

    def extract(self, text: str) -> ExtractionResult:
        """Extract entities and relationships from text.

        Args:
            text: Memory text

        Returns:
            ExtractionResult, empty when the model output cannot be parsed

        Raises:
            EntityExtractionError: If the LLM provider is unavailable
        """
        if not text or not text.strip():
            logger.debug('Empty text provided for entity extraction')
            return ExtractionResult()

        try:
            response, _ = self.llm.generate_response(prompt=f'Extract entities and relationships from this text:\n"{text}"',
                                                     system_prompt=SYSTEM_PROMPT,
                                                     prefill='```json',
                                                     stop_sequences=['```'])
        except BedrockLLMError as e:
            logger.error(f'LLM error during entity extraction: {e}')
            raise EntityExtractionError(f'Entity extraction failed: {e}')

        result = parse_extraction(response)
        logger.debug(f'Extracted {len(result.entities)} entities and {len(result.relationships)} relationships')
        return result

    def health_check(self) -> bool:
        return self.llm.health_check()
