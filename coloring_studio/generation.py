"""Coloring-page generation and the credit gate around it.

The gate authenticates the caller, re-checks the trial, confirms a credit is
available, calls the image provider under a timeout and only after the
provider succeeded stores the pages and debits exactly one credit with the
ledger's conditional ``debit_credit``.
"""
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeout
from dataclasses import dataclass, field
from io import BytesIO
import logging

from google import genai
from google.genai import errors as genai_errors
from google.genai import types
from PIL import Image, ImageOps, UnidentifiedImageError

from .errors import (
    AuthenticationRequired,
    GenerationFailed,
    InvalidRequest,
    NoCreditsRemaining,
    ProviderAuthError,
    ProviderQuotaExceeded,
    ProviderTimeout,
    StudioError,
)
from .models import utcnow
from .trial import DEFAULT_TRIAL_LENGTH_DAYS, refresh_trial

logger = logging.getLogger(__name__)

DEFAULT_MODEL = "gemini-2.5-flash-image"
SOURCE_LONGEST_SIDE = 1024
MAX_SOURCE_IMAGES = 10

PAGE_SIZES = {
    "portrait": (1024, 1536),
    "landscape": (1536, 1024),
}
SIZE_ALIASES = {"1024x1536": "portrait", "1536x1024": "landscape"}
# Accepted and validated for API compatibility; the Gemini provider has no quality setting
QUALITIES = ("standard", "high")

COLORING_PAGE_PROMPT = """Transform the uploaded family photos into a beautiful coloring page design. {prompt}.

Create a clean line art drawing suitable for coloring with:
- Clear, bold outlines
- No filled areas or shading
- Simple, child-friendly design
- All elements should be outlined only, ready for coloring
- Combine all the people/subjects from the photos into a single cohesive coloring page scene

The result should look like a professional coloring book page with clean black lines on white background."""


def build_coloring_prompt(prompt):
    return COLORING_PAGE_PROMPT.format(prompt=prompt.strip())


def estimate_usage(prompt):
    # Rough estimate, the provider does not report token usage for images
    tokens = len(prompt) // 4
    return {"prompt_tokens": tokens, "completion_tokens": 0, "total_tokens": tokens}


def prepare_source_image(data):
    """Open an upload, honour EXIF orientation and scale its longest side to 1024 px."""
    try:
        with Image.open(BytesIO(data)) as img:
            img = ImageOps.exif_transpose(img).convert("RGB")
    except (UnidentifiedImageError, OSError) as e:
        raise InvalidRequest("Uploaded file is not a supported image") from e
    w, h = img.size
    longest = max(w, h)
    scale = SOURCE_LONGEST_SIDE / float(longest) if longest != 0 else 1.0
    new_w = max(1, int(round(w * scale)))
    new_h = max(1, int(round(h * scale)))
    return img.resize((new_w, new_h), Image.LANCZOS)


def render_page(data, page_size):
    """Fit a generated image onto a white page of ``page_size`` and encode it as PNG."""
    with Image.open(BytesIO(data)) as generated:
        page = ImageOps.pad(generated.convert("RGB"), page_size, method=Image.LANCZOS, color="white")
    buf = BytesIO()
    page.save(buf, format="PNG")
    return buf.getvalue()


@dataclass
class GenerationRequest:
    prompt: str
    images: list = field(default_factory=list)
    size: str = "portrait"
    quality: str = "standard"

    def validate(self, max_images=MAX_SOURCE_IMAGES):
        """Check the inputs and return the target page size in pixels."""
        if not self.images:
            raise InvalidRequest("At least one image is required")
        if len(self.images) > max_images:
            raise InvalidRequest(f"You can only upload up to {max_images} images")
        if not (self.prompt or "").strip():
            raise InvalidRequest("Prompt is required")
        size = SIZE_ALIASES.get(self.size, self.size)
        if size not in PAGE_SIZES:
            raise InvalidRequest("Size must be portrait or landscape")
        if self.quality not in QUALITIES:
            raise InvalidRequest("Quality must be standard or high")
        return PAGE_SIZES[size]


@dataclass
class GenerationResult:
    images: list
    usage: dict
    account: object

    def to_dict(self):
        return {
            "images": self.images,
            "usage": self.usage,
            "creditsRemaining": self.account.credits_remaining,
        }


class GeminiImageGenerator:
    """Image provider backed by Google's Gemini image models."""

    def __init__(self, client, model=DEFAULT_MODEL):
        self.client = client
        self.model = model

    @classmethod
    def from_api_key(cls, api_key, model=DEFAULT_MODEL, timeout_seconds=120):
        client = genai.Client(
            api_key=api_key,
            http_options=types.HttpOptions(timeout=int(timeout_seconds * 1000)),
        )
        return cls(client, model)

    def generate(self, prompt, images):
        """Return the raw bytes of every image in the provider's response."""
        try:
            response = self.client.models.generate_content(
                model=self.model,
                contents=[*images, prompt],
            )
        except genai_errors.APIError as e:
            message = str(getattr(e, "message", "") or e)
            if e.code == 429 or e.status == "RESOURCE_EXHAUSTED":
                raise ProviderQuotaExceeded() from e
            if e.code in (401, 403) or "API key not valid" in message:
                raise ProviderAuthError() from e
            raise GenerationFailed() from e

        image_parts = []
        for candidate in response.candidates or []:
            if candidate.content is None:
                continue
            for part in candidate.content.parts or []:
                if part.inline_data and part.inline_data.data:
                    image_parts.append(part.inline_data.data)
        return image_parts


class GenerationGate:
    def __init__(
        self,
        ledger,
        generator,
        store,
        trial_length_days=DEFAULT_TRIAL_LENGTH_DAYS,
        timeout_seconds=120,
        max_source_images=MAX_SOURCE_IMAGES,
        workers=4,
        clock=utcnow,
    ):
        self.ledger = ledger
        self.generator = generator
        self.store = store
        self.trial_length_days = trial_length_days
        self.timeout_seconds = timeout_seconds
        self.max_source_images = max_source_images
        self.clock = clock
        self._executor = ThreadPoolExecutor(max_workers=workers, thread_name_prefix="generation")

    def close(self):
        self._executor.shutdown(wait=False, cancel_futures=True)

    def generate(self, account_id, request):
        if not account_id:
            raise AuthenticationRequired()
        account = self.ledger.get_by_id(account_id)
        if account is None:
            raise AuthenticationRequired()
        account = refresh_trial(self.ledger, account, self.clock(), self.trial_length_days)
        if account.credits_remaining <= 0:
            raise NoCreditsRemaining()

        page_size = request.validate(self.max_source_images)
        sources = [prepare_source_image(data) for data in request.images]
        prompt = build_coloring_prompt(request.prompt)

        outputs = self._call_provider(prompt, sources)
        stored = self._store_pages(account.id, outputs, page_size)

        debited = self.ledger.debit_credit(account.id)
        if debited is None:
            # A concurrent request spent the last credit first
            self._discard(stored)
            raise NoCreditsRemaining()
        logger.info("Generated %d page(s) for account %s, %d credit(s) left",
                    len(stored), account.id, debited.credits_remaining)

        images = [{"filename": image.key, "output_format": "png", "url": image.url} for image in stored]
        return GenerationResult(images=images, usage=estimate_usage(prompt), account=debited)

    def _call_provider(self, prompt, sources):
        future = self._executor.submit(self.generator.generate, prompt, sources)
        try:
            outputs = future.result(timeout=self.timeout_seconds)
        except FutureTimeout:
            future.cancel()
            logger.error("Image generation timed out after %ss", self.timeout_seconds)
            raise ProviderTimeout()
        except StudioError as e:
            logger.error("Image provider failed: %s (%s)", e.code, e.__cause__)
            raise
        except Exception as e:
            logger.exception("Image generation error")
            raise GenerationFailed() from e
        if not outputs:
            logger.error("No image was generated in the response")
            raise GenerationFailed()
        return outputs

    def _store_pages(self, account_id, outputs, page_size):
        stored = []
        try:
            for data in outputs:
                page = render_page(data, page_size)
                stored.append(self.store.save(self.store.new_key(account_id), page))
        except Exception as e:
            logger.exception("Failed to store generated pages for account %s", account_id)
            self._discard(stored)
            raise GenerationFailed() from e
        return stored

    def _discard(self, stored):
        for image in stored:
            try:
                self.store.delete(image.key)
            except OSError:
                logger.exception("Could not remove orphaned page %s", image.key)
