import os

# Force production env unless the host says otherwise
os.environ.setdefault("ENV", "production")

from savethesquare import create_app  # noqa: E402

app = create_app()
