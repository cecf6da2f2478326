"""
Base handler class for all job handlers
Provides common functionality and interface
"""

from abc import ABC, abstractmethod
from typing import Dict, Any, Type

from pydantic import BaseModel, ValidationError

from app.core.exceptions import InvalidJobPayload
from app.core.setup_logger import worker_logger


class BaseJobHandler(ABC):
    """
    Base class for all job handlers
    Each handler owns one job kind and the pydantic model of its payload
    """

    #: pydantic model the raw payload is validated into before ``execute``
    payload_model: Type[BaseModel]

    def __init__(self):
        self.logger = worker_logger

    @property
    @abstractmethod
    def kind(self) -> str:
        """Return the job kind this handler processes"""

    def parse(self, payload: Dict[str, Any]) -> BaseModel:
        try:
            return self.payload_model.model_validate(payload)
        except ValidationError as e:
            raise InvalidJobPayload(f"Invalid payload for '{self.kind}': {e}") from e

    @abstractmethod
    async def execute(self, payload: BaseModel) -> Dict[str, Any]:
        """
        Execute the job handler

        Args:
            payload: Job payload validated into ``payload_model``

        Returns:
            Result dictionary, stored on the completed job
        """
