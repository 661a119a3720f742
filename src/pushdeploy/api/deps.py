"""Shared API dependency providers."""

from __future__ import annotations

from functools import lru_cache

from fastapi import HTTPException, status

from pushdeploy.config import DeployConfig, ServiceSettings
from pushdeploy.core.deploy_pipeline import DeployPipeline
from pushdeploy.core.errors import ConfigError, UnknownBackendError
from pushdeploy.db.store import SQLiteStore


@lru_cache(maxsize=1)
def get_settings() -> ServiceSettings:
    return ServiceSettings()


@lru_cache(maxsize=1)
def _load_config() -> DeployConfig:
    return DeployConfig.load(get_settings().config_path)


def get_deploy_config() -> DeployConfig:
    try:
        return _load_config()
    except ConfigError as exc:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)
        ) from exc


@lru_cache(maxsize=1)
def _build_pipeline() -> DeployPipeline:
    return DeployPipeline.from_config(_load_config(), get_settings())


def get_pipeline() -> DeployPipeline:
    try:
        return _build_pipeline()
    except (ConfigError, UnknownBackendError) as exc:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)
        ) from exc


def get_store() -> SQLiteStore:
    return SQLiteStore(db_path=get_settings().db_path)


def reset_caches() -> None:
    """Forget cached settings, config and pipeline (used after reconfiguration)."""
    _build_pipeline.cache_clear()
    _load_config.cache_clear()
    get_settings.cache_clear()
