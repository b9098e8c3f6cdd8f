import os

# Force production env if the factory reads this
os.environ.setdefault("ENV", "production")

from kendofund import create_app  # noqa: E402

app = create_app()
