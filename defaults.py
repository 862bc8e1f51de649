# defaults.py: initial state of the database before any snapshot is loaded
import copy
from typing import Any, Dict

DEFAULT_CONFIG: Dict[str, Any] = {
    "app_title": "MUK-BIOMEDSSA",
    "app_subtitle": "Research App",
    "welcome_message": "Stay Updated with the Latest Biomedical Research Discoveries",
    "primary_color": "#0D7377",
    "secondary_color": "#f8fafc",
    "accent_color": "#16a34a",
    "text_color": "#1e293b",
    "about_description": "To provide biomedical science students with accessible, curated research content",
    "font_family": "Plus Jakarta Sans",
    "font_size": 16,
    "contact_email": "biomedssa@muk.ac.zm",
    "contact_location": "Mukuba University, Kitwe",
    "contact_website": "",
}

USERS = "users"
ARTICLES = "articles"
CONFIG = "config"
UNDERSTANDING = "understanding"
PUSH_SUBSCRIPTIONS = "pushSubscriptions"

EMPTY_UNDERSTANDING = {"summary": "", "materials": []}


def empty_db() -> Dict[str, Any]:
    """Fresh collections, as used at first boot and after a failed hydrate."""
    return {
        USERS: [],
        ARTICLES: [],
        CONFIG: copy.deepcopy(DEFAULT_CONFIG),
        UNDERSTANDING: {},
        PUSH_SUBSCRIPTIONS: [],
    }
