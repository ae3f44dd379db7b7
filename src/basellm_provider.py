from abc import ABC, abstractmethod


class BaseLLMProvider(ABC):
    """abstract base class for the LLM backing the triage step"""

    @abstractmethod
    def analyze(self, prompt: str) -> str:
        """returns the raw completion; raises TriageUnavailable when the model can't answer"""
        pass

    @abstractmethod
    def is_available(self) -> bool:
        pass

    @abstractmethod
    def initialize(self) -> bool:
        pass

    def cleanup(self) -> None:
        pass
