"""
Health check utilities for the application.
"""

from typing import Any, Dict, Tuple

from .config import AppConfig
from .logging_config import get_logger

logger = get_logger(__name__)

SERVICE_NAMES = {
    'bedrock_llm': 'Amazon Bedrock LLM',
    'bedrock_embed': 'Amazon Bedrock Embed',
    'neptune': 'Amazon Neptune',
    'opensearch': 'Amazon OpenSearch'
}


def get_health_status(components: Dict[str, Tuple[Any, Dict[str, Any]]]) -> Dict[str, Any]:
    """Get detailed health status of all components.

    Args:
        components: Component name -> (object with a ``health_check()`` method, extra details to report)

    Returns:
        Dictionary with health status of each component
    """
    health_status = {}

    for name, (component, details) in components.items():
        service = SERVICE_NAMES.get(name, name)
        try:
            health_status[name] = {'healthy': bool(component.health_check()), 'service': service, **details}
        except Exception as e:
            health_status[name] = {'healthy': False, 'service': service, 'error': str(e)}

    return health_status


def check_health(health_status: Dict[str, Any]) -> bool:
    """Check whether every component reported healthy.

    Returns:
        True if all components are healthy, False otherwise
    """
    all_healthy = all(status.get('healthy', False) for status in health_status.values())

    if all_healthy:
        logger.info('All system components are healthy')
    else:
        unhealthy = [name for name, status in health_status.items() if not status.get('healthy', False)]
        logger.warning(f'Some system components are unhealthy: {", ".join(unhealthy)}')

    return all_healthy


def get_system_info(app_config: AppConfig, health_status: Dict[str, Any]) -> Dict[str, Any]:
    """Get system information and configuration.

    Returns:
        Dictionary with system information
    """
    return {
        'service_name': 'Conscious Memory',
        'version': '1.0.0',
        'environment': app_config.environment,
        'configuration': {
            'bedrock_llm_model': app_config.bedrock_llm.model_id,
            'bedrock_embed_model': app_config.bedrock_embed.model_id,
            'opensearch_index': app_config.opensearch.index_name,
            'sync_enabled': app_config.sync.enabled,
            'sync_interval_seconds': app_config.sync.interval_seconds,
            'aws_region': app_config.bedrock_llm.region
        },
        'healthy': check_health(health_status),
        'health_status': health_status
    }
