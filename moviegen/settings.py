"""
Worker configuration.

Environment variables are loaded once (python-dotenv, then os.environ) into
WorkerSettings. Everything below this module receives plain config objects:

  GatewayConfig   → ProviderGateway   (mock switch, timeouts, retry budget)
  PipelineConfig  → Orchestrator      (attempt budget, optional steps)
  AssemblyConfig  → AssemblyResolver  (render backends, bounded wait)
"""

import os
from typing import Optional

from dotenv import load_dotenv
from pydantic import BaseModel, Field

from .providers.models import Capability

_TRUE = {"1", "true", "yes", "on"}

DEFAULT_TIMEOUTS = {
    Capability.LLM: 120.0,
    Capability.IMAGE: 180.0,
    Capability.IDENTITY_TRAINING: 1800.0,
    Capability.VIDEO: 900.0,
    Capability.AUDIO: 120.0,
    Capability.LIP_SYNC: 600.0,
    Capability.MUSIC: 300.0,
}


class GatewayConfig(BaseModel):
    mock_mode: bool = False
    timeouts: dict[Capability, float] = Field(default_factory=lambda: dict(DEFAULT_TIMEOUTS))
    max_retries: int = 3
    backoff_base: float = 2.0
    encryption_secret: str = ""

    def timeout_for(self, capability: Capability) -> float:
        return self.timeouts.get(capability, DEFAULT_TIMEOUTS[capability])


class PipelineConfig(BaseModel):
    scene_attempts: int = 3
    retry_backoff_base: float = 5.0
    scene_duration_seconds: int = 10
    aspect_ratio: str = "16:9"
    reference_images_per_character: int = 4
    enable_voice: bool = True
    enable_lip_sync: bool = False
    enable_music: bool = True
    default_scene_count: int = 5
    enable_visual_bible: bool = True
    # Derive a terminal frame when the video vendor returns none.
    derive_end_frames: bool = True
    location_references: bool = True


class AssemblyConfig(BaseModel):
    render_server_url: Optional[str] = None
    render_server_api_key: Optional[str] = None
    shotstack_api_key: Optional[str] = None
    shotstack_api_base: str = "https://api.shotstack.io/v1"
    assembly_timeout_seconds: float = 300.0
    poll_interval: float = 5.0


class WorkerSettings(BaseModel):
    supabase_url: Optional[str] = None
    supabase_service_role_key: Optional[str] = None
    redis_url: Optional[str] = None
    worker_secret: str = ""
    environment: str = "development"
    max_concurrent_jobs: int = 3

    r2_account_id: str = ""
    r2_access_key_id: str = ""
    r2_secret_access_key: str = ""
    r2_bucket_name: str = "assets"
    r2_public_url: str = ""

    gateway: GatewayConfig = Field(default_factory=GatewayConfig)
    pipeline: PipelineConfig = Field(default_factory=PipelineConfig)
    assembly: AssemblyConfig = Field(default_factory=AssemblyConfig)

    @property
    def supabase_configured(self) -> bool:
        return bool(self.supabase_url and self.supabase_service_role_key)

    @property
    def r2_configured(self) -> bool:
        return bool(self.r2_account_id and self.r2_access_key_id and self.r2_secret_access_key)


def _flag(env: dict, name: str, default: bool) -> bool:
    value = env.get(name)
    if value is None or value == "":
        return default
    return value.strip().lower() in _TRUE


def load_settings(env: Optional[dict] = None) -> WorkerSettings:
    """Build settings from `env` (defaults to the process environment after load_dotenv)."""
    if env is None:
        load_dotenv()
        env = dict(os.environ)

    service_key = env.get("SUPABASE_SERVICE_ROLE_KEY") or None
    supabase_url = env.get("SUPABASE_URL") or env.get("NEXT_PUBLIC_SUPABASE_URL") or None

    gateway = GatewayConfig(
        mock_mode=_flag(env, "MOCK_MODE", False),
        max_retries=int(env.get("VENDOR_MAX_RETRIES", 3)),
        backoff_base=float(env.get("VENDOR_BACKOFF_BASE", 2.0)),
        encryption_secret=env.get("API_KEY_ENCRYPTION_SECRET") or service_key or "",
    )
    pipeline = PipelineConfig(
        scene_attempts=int(env.get("SCENE_ATTEMPTS", 3)),
        retry_backoff_base=float(env.get("SCENE_RETRY_BACKOFF", 5.0)),
        enable_voice=_flag(env, "ENABLE_VOICE", True),
        enable_lip_sync=_flag(env, "ENABLE_LIP_SYNC", False),
        enable_music=_flag(env, "ENABLE_MUSIC", True),
        enable_visual_bible=_flag(env, "ENABLE_VISUAL_BIBLE", True),
        derive_end_frames=_flag(env, "DERIVE_END_FRAMES", True),
        location_references=_flag(env, "LOCATION_REFERENCES", True),
    )
    assembly = AssemblyConfig(
        render_server_url=env.get("ASSEMBLY_SERVER_URL") or None,
        render_server_api_key=env.get("ASSEMBLY_API_KEY") or None,
        shotstack_api_key=env.get("SHOTSTACK_API_KEY") or None,
        assembly_timeout_seconds=float(env.get("ASSEMBLY_TIMEOUT_SECONDS", 300)),
    )

    return WorkerSettings(
        supabase_url=supabase_url,
        supabase_service_role_key=service_key,
        redis_url=env.get("REDIS_URL") or None,
        worker_secret=env.get("WORKER_SHARED_SECRET", ""),
        environment=env.get("ENVIRONMENT", "development"),
        max_concurrent_jobs=int(env.get("MAX_CONCURRENT_JOBS", 3)),
        r2_account_id=env.get("R2_ACCOUNT_ID", ""),
        r2_access_key_id=env.get("R2_ACCESS_KEY_ID", ""),
        r2_secret_access_key=env.get("R2_SECRET_ACCESS_KEY", ""),
        r2_bucket_name=env.get("R2_BUCKET_NAME", "assets"),
        r2_public_url=env.get("R2_PUBLIC_URL", ""),
        gateway=gateway,
        pipeline=pipeline,
        assembly=assembly,
    )
