"""Authoring helpers: default survey, page duplication, name collision checks."""

import re
from collections import Counter
from typing import Dict, List

from .schema import Page, SurveyDocument, Theme

_NUMBER_SUFFIX = re.compile(r"_(\d+)$")

DEFAULT_THEME = {
    "primaryColor": "#1976d2",
    "primaryLight": "#42a5f5",
    "primaryDark": "#1565c0",
    "secondaryColor": "#dc004e",
    "accentColor": "#ff9800",
    "successColor": "#4caf50",
    "backgroundColor": "#ffffff",
    "cardBackground": "#f8f9fa",
    "headerBackground": "#ffffff",
    "textColor": "#212121",
    "secondaryText": "#757575",
    "disabledText": "#bdbdbd",
    "borderColor": "#e0e0e0",
    "focusBorder": "#1976d2",
}


def create_default_document() -> SurveyDocument:
    """Starting document for a project that has none yet."""
    return SurveyDocument.model_validate({
        "title": "Urban Streetscape Perception Survey",
        "description": "This survey helps us understand how people perceive different street environments.",
        "logo": "",
        "logoPosition": "right",
        "showQuestionNumbers": "off",
        "showProgressBar": "aboveheader",
        "progressBarType": "questions",
        "autoGrowComment": True,
        "showPreviewBeforeComplete": "showAllQuestions",
        "pages": [
            {
                "name": "demographics",
                "title": "Part 1: Background Information (Optional)",
                "description": "Please tell us a bit about yourself. All questions are optional and can be skipped.",
                "elements": [],
            }
        ],
        "theme": Theme.model_validate(DEFAULT_THEME).to_json_dict(),
    })


def next_copy_name(name: str) -> str:
    """``street_2`` -> ``street_3``; ``street`` -> ``street_1``."""
    match = _NUMBER_SUFFIX.search(name)
    if match:
        return name[: match.start()] + f"_{int(match.group(1)) + 1}"
    return f"{name}_1"


def duplicate_page(document: SurveyDocument, page_index: int) -> SurveyDocument:
    """Return a copy of ``document`` with page ``page_index`` duplicated after itself.

    The copy's page name, title and question names get an incremented
    ``_N`` suffix. Collisions with names already present elsewhere are not
    checked (see ``find_name_collisions``).
    """
    if page_index < 0 or page_index >= len(document.pages):
        raise IndexError(f"Page index {page_index} out of range")

    original = document.pages[page_index]
    data = original.to_json_dict()
    data["name"] = next_copy_name(original.name)
    data["title"] = next_copy_name(original.title or f"Page {page_index + 1}")
    for element in data.get("elements", []):
        if element.get("name"):
            element["name"] = next_copy_name(element["name"])
    copy = Page.model_validate(data)

    pages = [page.model_copy(deep=True) for page in document.pages]
    pages.insert(page_index + 1, copy)
    return document.model_copy(update={"pages": pages}, deep=True)


def find_name_collisions(document: SurveyDocument) -> Dict[str, List[str]]:
    """Names used more than once, for pages and for questions."""
    page_counts = Counter(page.name for page in document.pages)
    question_counts = Counter(
        element.name for _, element in document.iter_questions() if element.name
    )
    return {
        "pages": sorted(name for name, count in page_counts.items() if count > 1),
        "questions": sorted(name for name, count in question_counts.items() if count > 1),
    }
