"""
Worker configuration.

All credentials and tunables are read once from the environment (and an
optional .env file) into a Settings object, which is then handed to each
client at construction time.
"""

import os
from typing import Optional

from dotenv import load_dotenv
from pydantic import BaseModel


class Settings(BaseModel):
    # ── Gemini (vision, image edit, text) ────────────────────────────────
    gemini_api_key: str = ""
    gemini_api_base: str = "https://generativelanguage.googleapis.com/v1beta"
    gemini_text_model: str = "gemini-2.0-flash"
    gemini_image_model: str = "gemini-2.0-flash-preview-image-generation"

    # ── Kie.ai (video synthesis + file upload) ───────────────────────────
    kie_api_key: str = ""
    kie_api_base: str = "https://api.kie.ai/api/v1"
    kie_upload_url: str = "https://kieai.redpandaai.co/api/file-stream-upload"
    kie_upload_path: str = "images/user-uploads"
    video_model: str = "sora-2-image-to-video"

    # ── Supabase (job records) ───────────────────────────────────────────
    supabase_url: str = ""
    supabase_service_role_key: str = ""
    jobs_table: str = "video_generation_jobs"

    # ── Asset storage ────────────────────────────────────────────────────
    asset_backend: str = "kie"  # kie | r2
    r2_account_id: str = ""
    r2_access_key_id: str = ""
    r2_secret_access_key: str = ""
    r2_bucket_name: str = "assets"
    r2_public_url: str = ""

    # ── Video poll / remediation loop ────────────────────────────────────
    poll_interval: float = 10.0
    max_poll_attempts: int = 30
    max_remediation_rounds: int = 2

    # ── HTTP ─────────────────────────────────────────────────────────────
    http_timeout: float = 60.0
    kie_max_retries: int = 5
    kie_base_delay: float = 2.0

    # ── Worker ───────────────────────────────────────────────────────────
    worker_shared_secret: str = ""
    environment: str = "development"
    port: int = 8080

    @property
    def uses_supabase(self) -> bool:
        return bool(self.supabase_url and self.supabase_service_role_key)

    @classmethod
    def from_env(cls, env_file: Optional[str] = None) -> "Settings":
        """Build settings from os.environ after loading a .env file if present."""
        load_dotenv(env_file)
        env = os.environ

        def _get(name: str, default: str = "") -> str:
            return env.get(name, default)

        return cls(
            gemini_api_key=_get("GEMINI_API_KEY") or _get("GOOGLE_API_KEY"),
            gemini_text_model=_get("GEMINI_TEXT_MODEL", cls.model_fields["gemini_text_model"].default),
            gemini_image_model=_get("GEMINI_IMAGE_MODEL", cls.model_fields["gemini_image_model"].default),
            kie_api_key=_get("KIE_API_KEY"),
            kie_api_base=_get("KIE_API_BASE", cls.model_fields["kie_api_base"].default),
            kie_upload_url=_get("KIE_UPLOAD_URL", cls.model_fields["kie_upload_url"].default),
            supabase_url=_get("SUPABASE_URL"),
            supabase_service_role_key=_get("SUPABASE_SERVICE_ROLE_KEY"),
            asset_backend=_get("ASSET_BACKEND", "kie").lower(),
            r2_account_id=_get("R2_ACCOUNT_ID"),
            r2_access_key_id=_get("R2_ACCESS_KEY_ID"),
            r2_secret_access_key=_get("R2_SECRET_ACCESS_KEY"),
            r2_bucket_name=_get("R2_BUCKET_NAME", "assets"),
            r2_public_url=_get("R2_PUBLIC_URL"),
            poll_interval=float(_get("VIDEO_POLL_INTERVAL", "10")),
            max_poll_attempts=int(_get("VIDEO_MAX_POLL_ATTEMPTS", "30")),
            max_remediation_rounds=int(_get("VIDEO_MAX_REMEDIATION_ROUNDS", "2")),
            worker_shared_secret=_get("WORKER_SHARED_SECRET"),
            environment=_get("ENVIRONMENT", "development"),
            port=int(_get("PORT", "8080")),
        )
