"""Description Copywriter Module

Produces the default enrichment record for a product that has none yet:
an HTML description from a category template, SEO title/description and a
keyword list.

Two writers share the ``write(product, category_names)`` interface:
  - ``TemplateCopywriter``: deterministic templates (the default)
  - ``OpenAICopywriter``: asks an OpenAI chat model to polish the template
    draft, retrying rate-limit errors with exponential backoff; any failure
    falls back to the draft
"""

import logging
import time
from typing import Callable, Dict, List, Optional

import openai

from .models import CanonicalProduct, EnrichmentRecord, SyncStatus
from .taxonomy import category_path_parts

logger = logging.getLogger(__name__)

DESCRIPTION_TEMPLATES: Dict[str, str] = {
    "nozzles": (
        "<p>The {title} by {vendor} is a precision-engineered nozzle designed for consistent "
        "filament extrusion in 3D printing applications.</p>"
        "<p>Manufactured to exacting tolerances, this nozzle ensures smooth material flow and "
        "reliable print quality. Compatible with a wide range of filament types including PLA, "
        "PETG, and ABS.</p>"
        "<p>Easy to install and maintain, it's an essential spare part for maintaining optimal "
        "print performance.</p>"
    ),
    "hotends": (
        "<p>The {title} by {vendor} delivers reliable high-temperature printing performance for "
        "demanding 3D printing applications.</p>"
        "<p>Featuring quality construction, this hotend enables printing at elevated temperatures, "
        "perfect for various filament types. The precision design ensures consistent extrusion.</p>"
        "<p>Designed for easy installation, this component enhances print quality and reliability.</p>"
    ),
    "mainboards": (
        "<p>The {title} by {vendor} is a powerful control board designed to enhance your 3D "
        "printer's performance and capabilities.</p>"
        "<p>Featuring advanced processing for faster computation and smoother motion control, this "
        "mainboard supports silent stepper drivers and modern connectivity options.</p>"
        "<p>An excellent upgrade for improving print quality, reliability, and enabling advanced "
        "firmware features.</p>"
    ),
    "thermistors": (
        "<p>The {title} by {vendor} is a precision temperature sensor essential for accurate hotend "
        "and bed temperature monitoring.</p>"
        "<p>With high accuracy and fast response time, this thermistor ensures your printer "
        "maintains precise temperature control for optimal print quality.</p>"
        "<p>A critical spare part to keep on hand for maintaining your 3D printer's performance.</p>"
    ),
    "default": (
        "<p>The {title} by {vendor} is a quality 3D printing component designed for reliable "
        "performance.</p>"
        "<p>Built to exacting standards, this product offers excellent value and compatibility "
        "with popular 3D printer models.</p>"
        "<p>An essential addition to your 3D printing toolkit or spare parts collection.</p>"
    ),
}

# Feature bullets per top-level category
CATEGORY_FEATURES: Dict[str, List[str]] = {
    "3d-printers": ["Complete printer system", "Ready for assembly and calibration"],
    "filament": ["Consistent diameter", "Reliable layer adhesion"],
    "spare-parts": ["Direct replacement part", "Built for reliable performance"],
    "electronics": ["Tested electronic component", "Supports common firmware"],
    "motion": ["Smooth, precise movement", "Low wear under load"],
    "build-plates": ["Even heat distribution", "Easy print removal"],
    "tools": ["Workshop-grade construction", "Made for printer maintenance"],
    "accessories": ["Compatible with popular printers", "Quality 3D printing accessory"],
}


def _features_html(features: List[str]) -> str:
    if not features:
        return ""
    items = "".join(f"<li>{feature}</li>" for feature in features)
    return f"<ul>{items}</ul>"


class TemplateCopywriter:
    """Deterministic default descriptions from title, vendor and category."""

    def __init__(self, store_name: str = "3DByte Tech"):
        self.store_name = store_name

    def draft(self, product: CanonicalProduct, category_names: List[str]) -> EnrichmentRecord:
        top, child = category_path_parts(product.category_path)
        template = DESCRIPTION_TEMPLATES.get(child or "", DESCRIPTION_TEMPLATES["default"])
        vendor = product.vendor or "our team"
        rich_description = template.format(title=product.title, vendor=vendor)
        rich_description += _features_html(CATEGORY_FEATURES.get(top, []))

        category_label = category_names[-1] if category_names else "3D printing"
        keywords: List[str] = []
        for keyword in [product.vendor, *category_names, product.kind]:
            keyword = (keyword or "").strip()
            if keyword and keyword.lower() not in {k.lower() for k in keywords}:
                keywords.append(keyword)

        return EnrichmentRecord(
            product_id=product.id,
            product_handle=product.handle,
            product_title=product.title,
            rich_description=rich_description,
            seo_title=f"{product.title} | {self.store_name}",
            seo_description=(
                f"Shop {product.title} at {self.store_name}. "
                f"Quality {category_label.lower()} from {vendor}."
            ),
            meta_keywords=keywords,
            sync_status=SyncStatus.SYNCED,
        )

    def write(self, product: CanonicalProduct, category_names: List[str]) -> EnrichmentRecord:
        return self.draft(product, category_names)


class OpenAICopywriter(TemplateCopywriter):
    """Template draft rewritten by an OpenAI chat model."""

    SYSTEM_PROMPT = (
        "You write concise, factual product descriptions for a 3D printing parts store. "
        "Return 2-3 short HTML paragraphs using only <p>, <ul> and <li> tags. "
        "Do not invent specifications that are not in the input."
    )

    def __init__(
        self,
        client: "openai.OpenAI",
        model: str = "gpt-4o-mini",
        store_name: str = "3DByte Tech",
        max_retries: int = 5,
        sleep: Callable[[float], None] = time.sleep,
    ):
        super().__init__(store_name=store_name)
        self.client = client
        self.model = model
        self.max_retries = max_retries
        self._sleep = sleep

    def _complete(self, prompt: str) -> str:
        retries = 0
        while True:
            try:
                response = self.client.chat.completions.create(
                    model=self.model,
                    messages=[
                        {"role": "system", "content": self.SYSTEM_PROMPT},
                        {"role": "user", "content": prompt},
                    ],
                    temperature=0.3,
                )
                return (response.choices[0].message.content or "").strip()
            except openai.RateLimitError as e:
                retries += 1
                # insufficient quota won't clear by waiting
                if getattr(e, "code", None) == "insufficient_quota" or "insufficient_quota" in str(e):
                    logger.error("Insufficient quota – cannot retry. Error: %s", e)
                    raise
                if retries > self.max_retries:
                    logger.error("Max retries exceeded (%d). Last error: %s", self.max_retries, e)
                    raise
                wait_time = 2 ** retries
                logger.warning(
                    "Rate limit error from OpenAI (attempt %d/%d). Sleeping %d seconds. Error: %s",
                    retries,
                    self.max_retries,
                    wait_time,
                    e,
                )
                self._sleep(wait_time)

    def write(self, product: CanonicalProduct, category_names: List[str]) -> EnrichmentRecord:
        draft = self.draft(product, category_names)
        prompt = (
            f"Product: {product.title}\n"
            f"Brand: {product.vendor}\n"
            f"Category: {' > '.join(category_names)}\n"
            f"Variants: {', '.join(v.title for v in product.variants)}\n\n"
            f"Rewrite this draft:\n{draft.rich_description}"
        )
        try:
            text = self._complete(prompt)
        except Exception:
            logger.warning("OpenAI copywriter failed for %s; using template draft", product.id, exc_info=True)
            return draft
        if not text:
            return draft
        return draft.model_copy(update={"rich_description": text})


def build_copywriter(
    mode: str,
    store_name: str,
    api_key: Optional[str] = None,
    model: str = "gpt-4o-mini",
) -> TemplateCopywriter:
    if mode == "openai":
        return OpenAICopywriter(openai.OpenAI(api_key=api_key), model=model, store_name=store_name)
    return TemplateCopywriter(store_name=store_name)
