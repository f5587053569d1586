"""cached_wheel_builder: Python wheel builds with layered caching.

ビルド成果物キャッシュ・コンパイラキャッシュ・依存キャッシュを重ねたビルドと、
生成ソースのコミット/PR自動化を提供する。
"""

from cached_wheel_builder.config import BuildConfig, TriggerContext, config_from_inputs
from cached_wheel_builder.pipeline import PipelineResult, run_pipeline

__version__ = "0.1.0"

__all__ = [
    "BuildConfig",
    "TriggerContext",
    "config_from_inputs",
    "PipelineResult",
    "run_pipeline",
]
