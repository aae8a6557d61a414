from .clients import AWSModule, EC2ClientFactory
from .provider import CAPACITY_ERROR_CODES, EC2Provider

__all__ = [
    "AWSModule",
    "CAPACITY_ERROR_CODES",
    "EC2ClientFactory",
    "EC2Provider",
]
