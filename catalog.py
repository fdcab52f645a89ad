import re
from urllib.parse import quote

from config import settings

DEFAULT_MODEL = "jabami_anime_tree_v2.glb"

MODELS = {
    "jabami_anime_tree_v2.glb": {
        "label": "Anime-style tree",
        "description": "A tree with a modern Japanese look",
    },
    "low_poly_purple_flowers.glb": {
        "label": "Purple blossom tree",
        "description": "Delicate flowers in violet tones",
    },
    "tree_elm.glb": {
        "label": "Elm",
        "description": "A classic, elegant tree",
    },
    "ficus_bonsai.glb": {
        "label": "Ficus bonsai",
        "description": "Small but full of meaning",
    },
    "flowerpot.glb": {
        "label": "Flowerpot",
        "description": "A decorative potted plant",
    },
}

YOUTUBE_ID = re.compile(r"(?:youtube\.com.*[?&]v=|youtu\.be/)([^&\n?#]+)")


def is_known_model(ref):
    return ref in MODELS


def list_models():
    return [{"value": ref, **info} for ref, info in MODELS.items()]


def model_url(ref):
    return f"{settings.MODEL_BASE_URL.rstrip('/')}/{quote(ref)}"


def ar_links(memorial):
    """Scene-viewer intent for Android and the raw model for iOS quick look."""
    url = model_url(memorial.model_ref)
    intent = (
        "intent://arvr.google.com/scene-viewer/1.0"
        f"?file={quote(url, safe='')}&mode=ar_preferred"
        "#Intent;scheme=https;package=com.google.ar.core;action=android.intent.action.VIEW;"
        f"S.browser_fallback_url={quote(settings.AR_FALLBACK_URL, safe='')};end;"
    )
    return {"model_url": url, "android_intent": intent, "ios_quick_look": url}


def youtube_embed_url(link):
    if not link:
        return None
    match = YOUTUBE_ID.search(link)
    if not match:
        return None
    return f"https://www.youtube.com/embed/{match.group(1)}"
