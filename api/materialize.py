"""
Survey materialization: authoring document -> renderer-ready runtime document.

Two passes over every page:

1. Image resolution. Image-bearing questions with ``randomImageSelection``
   get a random draw from their candidate pool (see ``ImageResolver``) and
   the drawn images are written onto the question in the shape its
   renderer expects (display link, picker choices, or an HTML fragment).
2. Composition. Rating, boolean, matrix and ranking questions that carry
   an HTML fragment are replaced with a panel holding the fragment and the
   native response control. The control keeps the question's name, which
   is the key joining answers to the displayed-image record.

The names of every image shown are collected per question in
``displayed_images`` so a response can state exactly what was seen.
"""

import html
import re
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional

from .errors import ImageResolutionFailure
from .image_sources import ImageResolver
from .schema import (
    ImageBooleanQuestion,
    ImageDisplayQuestion,
    ImageMatrixQuestion,
    ImagePickerQuestion,
    ImageQuestion,
    ImageRankingQuestion,
    ImageRatingQuestion,
    ImageRef,
    SurveyDocument,
    Theme,
)
from .shared.logger import get_logger

logger = get_logger(__name__)

PANEL_TITLE = "See below images:"
_IMAGE_NAME_ATTR = re.compile(r'data-image-name="([^"]+)"')
# Source credentials are never sent to participants.
_PRIVATE_FIELDS = ("huggingFaceConfig", "supabaseConfig")


@dataclass
class RuntimeDocument:
    """Materialized survey, its derived theme and the images drawn per question."""
    survey: Dict[str, Any]
    theme: Optional[Dict[str, Any]] = None
    displayed_images: Dict[str, List[str]] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "survey": self.survey,
            "theme": self.theme,
            "displayedImages": self.displayed_images,
        }


def _compact(data: Dict[str, Any]) -> Dict[str, Any]:
    return {key: value for key, value in data.items() if value is not None}


def build_image_html(images: List[ImageRef]) -> str:
    """Inline fragment showing ``images``, each tagged with its name."""
    tags = "".join(
        f'<img src="{html.escape(image.url)}" data-image-name="{html.escape(image.name)}" '
        'style="max-width: 300px; height: auto; border-radius: 4px;" />'
        for image in images
    )
    return f'<div style="display: flex; flex-wrap: wrap; gap: 10px; margin: 10px 0;">{tags}</div>'


def extract_image_names(fragment: str) -> List[str]:
    return [html.unescape(name) for name in _IMAGE_NAME_ATTR.findall(fragment or "")]


# ============= Pass 1: image resolution =============


def _apply_display(question: ImageDisplayQuestion, images: List[ImageRef]) -> ImageQuestion:
    update = {
        "image_link": images[0].url,
        "image_name": images[0].name,
        "image_names": [image.name for image in images],
    }
    # The renderer shows the first image; the rest are kept for later use.
    if len(images) > 1:
        update["image_links"] = [image.url for image in images]
    return question.model_copy(update=update)


def _apply_picker(question: ImagePickerQuestion, images: List[ImageRef]) -> ImageQuestion:
    choices = [
        {"value": f"image_{index}", "imageLink": image.url, "imageName": image.name}
        for index, image in enumerate(images)
    ]
    return question.model_copy(update={
        "choices": choices,
        "image_names": [image.name for image in images],
    })


def _apply_html(question: ImageQuestion, images: List[ImageRef]) -> ImageQuestion:
    return question.model_copy(update={
        "image_html": build_image_html(images),
        "image_names": [image.name for image in images],
    })


def _apply_ranking(question: ImageRankingQuestion, images: List[ImageRef]) -> ImageQuestion:
    resolved = _apply_html(question, images)
    choices = [{"value": image.name, "text": image.name} for image in images]
    return resolved.model_copy(update={"choices": choices})


_APPLIERS: Dict[type, Callable[[Any, List[ImageRef]], ImageQuestion]] = {
    ImageDisplayQuestion: _apply_display,
    ImagePickerQuestion: _apply_picker,
    ImageRankingQuestion: _apply_ranking,
    ImageRatingQuestion: _apply_html,
    ImageBooleanQuestion: _apply_html,
    ImageMatrixQuestion: _apply_html,
}


async def resolve_question(question: Any, resolver: ImageResolver) -> Any:
    """Draw images for one question; returns it unchanged when nothing can be drawn."""
    if not isinstance(question, ImageQuestion) or not question.random_image_selection:
        return question

    try:
        images = await resolver.resolve(question)
    except ImageResolutionFailure as e:
        logger.warning("Error loading random images for question %s: %s", question.name, e)
        return question

    if images is None:
        logger.warning("No image source configured for question: %s", question.name)
        return question
    if not images:
        logger.warning("No images found for random selection in question: %s", question.name)
        return question

    resolved = _APPLIERS[type(question)](question, images)
    logger.debug("Loaded %d random images for question: %s", len(images), question.name)
    return resolved.model_copy(update={"image_fit": "cover"})


# ============= Pass 2: composition =============


def tracked_image_names(question: Any) -> List[str]:
    """Image names shown by ``question``, from the most specific record available."""
    if not isinstance(question, ImageQuestion):
        return []
    if question.image_names:
        return list(question.image_names)
    if question.image_html:
        names = extract_image_names(question.image_html)
        if names:
            return names
    choices = getattr(question, "choices", None) or []
    names = [choice.get("imageName") for choice in choices if isinstance(choice, dict) and choice.get("imageName")]
    if names:
        return names
    image_name = getattr(question, "image_name", None)
    return [image_name] if image_name else []


def _boolean_control(question: ImageBooleanQuestion) -> Dict[str, Any]:
    return {
        "type": "boolean",
        "labelTrue": question.label_true or "Yes",
        "labelFalse": question.label_false or "No",
        "valueTrue": question.value_true,
        "valueFalse": question.value_false,
    }


def _rating_control(question: ImageRatingQuestion) -> Dict[str, Any]:
    return {
        "type": "rating",
        "rateMin": question.rate_min or 1,
        "rateMax": question.rate_max or 5,
        "minRateDescription": question.min_rate_description,
        "maxRateDescription": question.max_rate_description,
    }


def _matrix_control(question: ImageMatrixQuestion) -> Dict[str, Any]:
    return {
        "type": "matrix",
        "columns": question.columns,
        "rows": question.rows,
    }


def _ranking_control(question: ImageRankingQuestion) -> Dict[str, Any]:
    choices = question.choices or [{"value": name, "text": name} for name in tracked_image_names(question)]
    return {"type": "ranking", "choices": choices}


_CONTROLS: Dict[type, Callable[[Any], Dict[str, Any]]] = {
    ImageBooleanQuestion: _boolean_control,
    ImageRatingQuestion: _rating_control,
    ImageMatrixQuestion: _matrix_control,
    ImageRankingQuestion: _ranking_control,
}


def _public_json(question: Any) -> Dict[str, Any]:
    data = question.to_json_dict()
    for key in _PRIVATE_FIELDS:
        data.pop(key, None)
    return data


def compose_question(question: Any) -> Dict[str, Any]:
    """Runtime JSON for one question, as a panel where images and control belong together."""
    build_control = _CONTROLS.get(type(question))
    if build_control is None or not (question.image_html or question.random_image_selection):
        return _public_json(question)
    if not question.image_html:
        logger.warning("%s %s has no imageHtml, skipping panel conversion", question.type, question.name)
        return _public_json(question)

    control = build_control(question)
    control.update({
        "name": question.name,
        "title": question.title,
        "isRequired": question.is_required,
    })
    return _compact({
        "type": "panel",
        "name": f"{question.name}_panel",
        "title": PANEL_TITLE,
        "description": question.description,
        "state": "expanded",
        "elements": [
            {"type": "html", "name": f"{question.name}_images", "html": question.image_html},
            _compact(control),
        ],
    })


# ============= Theme =============


def generate_custom_theme(theme: Optional[Theme]) -> Optional[Dict[str, Any]]:
    """Map named color tokens onto the renderer's ``--sjs-*`` variables.

    Returns None when the document has no theme, leaving the renderer's
    default theme in place.
    """
    if theme is None:
        return None

    background = theme.background_color or "#ffffff"
    card = theme.card_background or "#f8f9fa"
    header_dim = theme.header_background or "#fafafa"
    text = theme.text_color or "#212121"
    primary = theme.primary_color or "#1976d2"
    primary_light = theme.primary_light or "#42a5f5"
    accent = theme.accent_color or "#ff9800"
    success = theme.success_color or "#4caf50"
    border = theme.border_color or "#e0e0e0"

    return {
        "cssVariables": {
            "--sjs-general-backcolor": background,
            "--sjs-general-backcolor-dark": card,
            "--sjs-general-backcolor-dim": header_dim,
            "--sjs-general-forecolor": text,
            "--sjs-general-forecolor-light": theme.secondary_text or "#757575",
            "--sjs-general-dim-forecolor": theme.disabled_text or "#bdbdbd",
            "--sjs-primary-backcolor": primary,
            "--sjs-primary-backcolor-light": primary_light,
            "--sjs-primary-backcolor-dark": theme.primary_dark or "#1565c0",
            "--sjs-primary-forecolor": "#ffffff",
            "--sjs-secondary-backcolor": theme.secondary_color or "#dc004e",
            "--sjs-secondary-backcolor-light": accent,
            "--sjs-secondary-backcolor-semi-light": success,
            "--sjs-secondary-forecolor": "#ffffff",
            "--sjs-border-light": border,
            "--sjs-border-default": border,
            "--sjs-border-inside": border,
            "--sjs-special-red": accent,
            "--sjs-special-green": success,
            "--sjs-special-blue": theme.focus_border or primary,
            "--sjs-shadow-small": "0px 1px 2px 0px rgba(0, 0, 0, 0.15)",
            "--sjs-shadow-medium": "0px 2px 6px 0px rgba(0, 0, 0, 0.1)",
            "--sjs-shadow-large": "0px 8px 16px 0px rgba(0, 0, 0, 0.1)",
            "--sjs-shadow-inner": "inset 0px 1px 2px 0px rgba(0, 0, 0, 0.15)",
            "--sjs-header-backcolor": theme.header_background or "#ffffff",
            "--sjs-corner-radius": "8px",
            "--sjs-base-unit": "8px",
            "--sjs-editor-backcolor": background,
            "--sjs-editorpanel-backcolor": card,
            "--sjs-editorpanel-hovercolor": primary_light,
            "--sjs-progressbar-color": primary,
            "--sjs-questionpanel-backcolor": card,
            "--sjs-questionpanel-hovercolor": header_dim,
            "--sjs-questionpanel-cornerradius": "8px",
        },
        "themeName": "custom",
        "colorPalette": "light",
        "isPanelless": False,
    }


# ============= Entry point =============


async def materialize(document: SurveyDocument, resolver: ImageResolver) -> RuntimeDocument:
    """Build the runtime document for one participant session.

    Deterministic except for the image draws. Failures are contained per
    question: a question whose images cannot be resolved is passed through
    without image data.
    """
    displayed_images: Dict[str, List[str]] = {}
    pages = []

    for page in document.pages:
        elements = []
        for element in page.elements:
            resolved = await resolve_question(element, resolver)
            names = tracked_image_names(resolved)
            if names and resolved.name and resolved.name not in displayed_images:
                displayed_images[resolved.name] = names
            elements.append(compose_question(resolved))

        page_json = page.to_json_dict()
        page_json["elements"] = elements
        pages.append(page_json)

    survey = document.to_json_dict()
    survey.pop("theme", None)
    survey.pop("preloadedImages", None)
    survey["pages"] = pages

    logger.info(
        "Materialized survey '%s': %d pages, images drawn for %d questions",
        document.title or "",
        len(pages),
        len(displayed_images),
    )
    return RuntimeDocument(
        survey=survey,
        theme=generate_custom_theme(document.theme),
        displayed_images=displayed_images,
    )
