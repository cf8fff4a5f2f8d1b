"""OCR preprocessing for models without vision support.

When a turn carries images the model cannot see, an OCR model extracts
their text first. A user-configured OCR model always wins; otherwise the
built-in licensed OCR model is used. With neither available the turn is
rejected before any network call.
"""

from __future__ import annotations

import logging

from confab.chat.capabilities import ModelFactory, ModelInterface, OcrInvoker, needs_ocr
from confab.chat.schemas import InfoPart, Message
from confab.config import Settings
from confab.errors import ConfigurationError, OCRError

logger = logging.getLogger(__name__)


def ensure_ocr_configured(settings: Settings) -> None:
    """Raise ConfigurationError when neither a user OCR model nor a license is set."""
    if settings.has_user_ocr_model or settings.is_pro:
        return
    raise ConfigurationError(
        "model_not_support_image_2",
        "Current model does not support image input. Configure an OCR model "
        "or a license key to process images.",
    )


class OcrPreprocessor:
    def __init__(self, settings: Settings, model_factory: ModelFactory, invoker: OcrInvoker) -> None:
        self._settings = settings
        self._model_factory = model_factory
        self._invoker = invoker

    def resolve_ocr_model(self) -> tuple[ModelInterface, str]:
        """Return (ocr_model, provider_name) or raise ConfigurationError."""
        settings = self._settings
        if settings.has_user_ocr_model:
            model = self._model_factory.create(settings.ocr_provider, settings.ocr_model)
            return model, settings.ocr_provider
        ensure_ocr_configured(settings)
        model = self._model_factory.create(settings.builtin_ocr_provider, settings.builtin_ocr_model)
        return model, settings.builtin_ocr_provider_name

    async def process(self, model: ModelInterface, messages: list[Message]) -> InfoPart | None:
        """Run OCR over messages in place when the model needs it.

        Returns the info notice to show alongside the answer, or None when
        no OCR was necessary.
        """
        if not needs_ocr(model, messages):
            return None

        ocr_model, provider_name = self.resolve_ocr_model()
        logger.info("Model %s lacks vision, running OCR via %s", model.model_id, provider_name)
        try:
            await self._invoker.run(ocr_model, messages)
        except Exception as e:
            raise OCRError(provider_name, e) from e

        return InfoPart(
            text=f"Current model {model.model_id} does not support image input, using OCR to process images"
        )
