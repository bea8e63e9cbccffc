"""Product category classification.

The category only narrows which registry sources are queried. The
classifier is an opaque collaborator: a missing API key, a service error
or an answer outside the fixed category list all degrade to `None`
(uncategorized), which applies no source filtering.
"""
from typing import Optional

import requests

from .utils import logger

CATEGORIES = [
    "Motorcycle", "Camera", "Cycling", "Automotive", "Electronics", "Furniture",
    "Musical Instruments", "Sports", "Tools", "Collectibles", "Jewelry", "Art",
    "Books", "Clothing", "Home & Garden", "Other",
]
UNCATEGORIZED = "Other"


def normalize_category(answer: Optional[str]) -> Optional[str]:
    if not answer:
        return None
    cleaned = answer.strip().strip(".\"'").lower()
    for category in CATEGORIES:
        if category.lower() == cleaned:
            return None if category == UNCATEGORIZED else category
    return None


def search_label(spec) -> str:
    parts = [spec.brand, spec.model, spec.qualifier, spec.sub_qualifier]
    return " ".join(p.strip() for p in parts if p and p.strip())


class OpenAIClassifier:
    API_URL = "https://api.openai.com/v1/chat/completions"

    def __init__(self, api_key: Optional[str], model: str = "gpt-4o-mini",
                 session: Optional[requests.Session] = None, timeout: float = 30):
        self.api_key = api_key
        self.model = model
        self.session = session or requests.Session()
        self.timeout = timeout

    def classify(self, spec) -> Optional[str]:
        if not self.api_key:
            return None
        prompt = (
            "Categorize this product search into one of these categories: "
            f"{', '.join(CATEGORIES)}.\n\n"
            f"Product: {search_label(spec)}\n\n"
            "Return only the category name, nothing else."
        )
        body = {
            "model": self.model,
            "messages": [{"role": "user", "content": prompt}],
            "max_tokens": 20,
            "temperature": 0.1,
        }
        try:
            response = self.session.post(
                self.API_URL,
                json=body,
                headers={"Authorization": f"Bearer {self.api_key}"},
                timeout=self.timeout,
            )
            response.raise_for_status()
            answer = response.json()["choices"][0]["message"]["content"]
        except requests.exceptions.RequestException as e:
            logger.warning("Category classification failed: %s", e)
            return None
        except (ValueError, KeyError, IndexError, TypeError) as e:
            logger.warning("Unreadable classification response: %s", e)
            return None
        category = normalize_category(answer)
        logger.info("Classified %r as %s", search_label(spec), category or "uncategorized")
        return category
