from app.models.app_setting import AppSetting
from app.models.base import Base
from app.models.credential import Credential
from app.models.domain import Domain
from app.models.environment import ServiceEnvironment
from app.models.event import Event
from app.models.service import Service

__all__ = [
    "AppSetting",
    "Base",
    "Credential",
    "Domain",
    "Event",
    "Service",
    "ServiceEnvironment",
]
