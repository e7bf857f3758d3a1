"""
Wires the pipeline from Settings: one shared httpx client, the Gemini and
Kie.ai clients, the asset backend and the job store.
"""

import logging

import httpx
from supabase import create_client

from .config import Settings
from .gemini import GeminiClient
from .kie import KieClient
from .pipeline.image_edit import ImageTransformer
from .pipeline.job_store import InMemoryJobStore, JobStore, SupabaseJobStore
from .pipeline.orchestrator import VideoGenerationService
from .pipeline.script_writer import ScriptWriter
from .pipeline.storage import build_publisher
from .pipeline.synthesizer import VideoSynthesizer
from .pipeline.vision import SubjectDetector

logger = logging.getLogger(__name__)


def build_job_store(settings: Settings) -> JobStore:
    if settings.uses_supabase:
        logger.info(f"Job records in Supabase table {settings.jobs_table}")
        return SupabaseJobStore(
            create_client(settings.supabase_url, settings.supabase_service_role_key),
            settings.jobs_table,
        )
    logger.warning("SUPABASE_URL / SUPABASE_SERVICE_ROLE_KEY not set — using in-memory job store")
    return InMemoryJobStore()


def build_service(
    settings: Settings,
    http: httpx.AsyncClient,
    store: JobStore | None = None,
) -> VideoGenerationService:
    gemini = GeminiClient(settings, http)
    kie = KieClient(settings, http)

    return VideoGenerationService(
        store=store or build_job_store(settings),
        detector=SubjectDetector(gemini, settings.gemini_text_model),
        transformer=ImageTransformer(gemini, settings.gemini_image_model),
        publisher=build_publisher(settings, kie),
        writer=ScriptWriter(gemini, settings.gemini_text_model, http),
        synthesizer=VideoSynthesizer(kie),
        http=http,
        poll_interval=settings.poll_interval,
        max_poll_attempts=settings.max_poll_attempts,
        max_remediation_rounds=settings.max_remediation_rounds,
    )
