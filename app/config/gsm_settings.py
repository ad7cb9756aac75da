import os
import json
from typing import Dict, Any
import structlog

logger = structlog.get_logger()

def load_secrets_from_gsm() -> Dict[str, Any]:
    """
    Load the JSON secret bundle (Chapa keys, database and broker credentials)
    from Google Secret Manager and return it as a dictionary.
    This function runs before Settings initialization.
    """
    secret_manager_enabled = os.getenv('SECRET_MANAGER_ENABLED', 'false').lower() == 'true'
    json_secret_id = os.getenv('JSON_APP_SECRETS_GSM_ID')

    if not secret_manager_enabled or not json_secret_id:
        logger.info("Secret Manager disabled or ID not set - returning empty dict")
        return {}

    # Only imported when enabled so local runs and tests don't need GCP credentials
    from google.cloud import secretmanager

    try:
        client = secretmanager.SecretManagerServiceClient()
        logger.info(f"Fetching secret: {json_secret_id}")

        response = client.access_secret_version(request={"name": json_secret_id})
        json_string = response.payload.data.decode("UTF-8")
        secrets = json.loads(json_string)

        logger.info(f"Successfully loaded {len(secrets)} secrets from GSM")
        return secrets

    except Exception as e:
        logger.error(f"Failed to load secrets from GSM: {e}")
        return {}

def set_env_vars_from_secrets(secrets: Dict[str, Any]) -> None:
    """
    Set environment variables from the secrets dictionary.
    Values already present in the environment are left alone so an operator
    can override a single secret without editing the bundle.
    """
    applied = 0
    for key, value in secrets.items():
        if value is not None and key not in os.environ:
            os.environ[key] = str(value)
            applied += 1

    logger.info(f"Total env vars set from GSM: {applied}")


# Load secrets at module import time
gsm_secrets = load_secrets_from_gsm()
set_env_vars_from_secrets(gsm_secrets)
