"""
FastAPI dependencies for feature flags.

Usage:
    from featurekit.core.features import EvaluationContext
    from featurekit.core.features.dependencies import Features

    @router.get("/dashboard")
    async def dashboard(features: Features, user_id: str):
        context = EvaluationContext(user_id=user_id, environment="production")
        if await features.is_enabled("new_dashboard", context):
            return new_dashboard()
        return old_dashboard()
"""

from typing import Annotated

from fastapi import Depends, Request

from featurekit.core.config import FeatureSettings
from featurekit.core.container import Container, container as default_container

from .manager import FeatureManager


def get_container(request: Request) -> Container:
    """Container attached to the app by create_app(), else the global one."""
    return getattr(request.app.state, "container", None) or default_container


async def get_feature_manager(
    container: Container = Depends(get_container),
) -> FeatureManager:
    """Get the feature manager."""
    return container.manager


async def get_feature_settings(
    container: Container = Depends(get_container),
) -> FeatureSettings:
    """Get the feature settings the container was built with."""
    return container.settings.features


# Type alias for cleaner injection
Features = Annotated[FeatureManager, Depends(get_feature_manager)]
FeatureConfig = Annotated[FeatureSettings, Depends(get_feature_settings)]
