import time
import logging
import subprocess
from typing import Any, Optional

from basellm_provider import BaseLLMProvider
from scan_errors import TriageUnavailable

logger = logging.getLogger(__name__)


class OllamaProvider(BaseLLMProvider):
    """
    Triage model served by a local (or remote) Ollama instance.

    Nothing is contacted until the first prompt, so building the provider is cheap
    even when triage ends up unused.
    """

    def __init__(
        self,
        model_name: str = "llama3.2",
        host: Optional[str] = None,
        auto_start: bool = False,
    ):
        self.model_name = model_name
        self.host = host
        self.auto_start = auto_start
        self.ollama_process = None
        self._client: Any = None
        self._initialized = False

    def _get_client(self) -> Any:
        if self._client is None:
            import ollama

            self._client = ollama.Client(host=self.host) if self.host else ollama.Client()
        return self._client

    def _is_ollama_running(self) -> bool:
        try:
            self._get_client().list()
            return True
        except Exception as e:
            logger.debug(f"Ollama not reachable: {e}")
            return False

    def _start_ollama_service(self) -> bool:
        logger.info("Attempting to start Ollama...")
        try:
            self.ollama_process = subprocess.Popen(
                ["ollama", "serve"],
                stdout=subprocess.DEVNULL,
                stderr=subprocess.DEVNULL,
                start_new_session=True,
            )
        except (FileNotFoundError, OSError) as e:
            logger.error(f"Failed to start Ollama service: {e}")
            return False

        for i in range(10):
            time.sleep(1)
            if self._is_ollama_running():
                logger.info("Ollama service started successfully")
                return True
            logger.debug(f"Waiting for Ollama to start... ({i+1}/10)")

        logger.warning("Ollama service started but not responding yet")
        return False

    def _ensure_model_available(self) -> None:
        client = self._get_client()
        try:
            client.show(self.model_name)
            return
        except Exception:
            logger.debug(f"Model '{self.model_name}' not found locally")

        logger.info(f"Pulling model '{self.model_name}'... This may take a few minutes.")
        try:
            client.pull(self.model_name)
        except Exception as e:
            raise TriageUnavailable(f"Failed to pull model '{self.model_name}': {e}") from e

    def initialize(self) -> bool:
        if self._initialized:
            return True

        if not self._is_ollama_running():
            if not (self.auto_start and self._start_ollama_service()):
                raise TriageUnavailable(
                    "Ollama service is not running. Try a manual start with ollama serve"
                )

        self._ensure_model_available()
        self._initialized = True
        return True

    def is_available(self) -> bool:
        return self._is_ollama_running()

    def analyze(self, prompt: str) -> str:
        """
        Sends the prompt with a low temperature, triage answers should be repeatable.
        """
        self.initialize()
        try:
            response = self._get_client().generate(
                model=self.model_name,
                prompt=prompt,
                stream=False,
                options={"temperature": 0.1, "top_p": 0.9, "num_predict": 4096},
            )
        except Exception as e:
            raise TriageUnavailable(f"Ollama analysis failed: {e}") from e
        return response["response"].strip()

    def cleanup(self) -> None:
        if self.ollama_process:
            try:
                self.ollama_process.terminate()
                self.ollama_process.wait(timeout=5)
            except (ProcessLookupError, subprocess.TimeoutExpired, OSError) as e:
                logger.debug(f"Error during cleanup: {e}")
