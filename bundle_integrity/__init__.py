from __future__ import annotations

# Load the project `.env` early so store clients that read `os.getenv`
# (SUPABASE_URL / SUPABASE_KEY) see the same values as Settings.
try:
    from bundle_integrity.utils.env import load_project_dotenv

    load_project_dotenv()
except Exception:
    # Never hard-fail import for optional dev convenience.
    pass
