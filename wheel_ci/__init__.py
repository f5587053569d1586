"""wheel_ci: CI統合レイヤ.

アクション入力の読み込み、キャッシュ付きwheelビルドの実行、ステップ出力の書き出しを提供する。
"""

from wheel_ci.main import run
from wheel_ci.outputs import write_step_outputs

__version__ = "0.1.0"

__all__ = [
    "run",
    "write_step_outputs",
]
