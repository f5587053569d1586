"""キャッシュキー導出・生成ソース正規化・ビルド後の差分反映.

- キャッシュキー（OS / Python バージョン / ファイル内容ハッシュ）
- 正規化（生成Cソースの非本質的な差分を除去）
- リコンサイル（差分検出 → 直接push / PR作成）: ``core.reconcile``
"""

from .cache_key import CacheKey, derive_cache_key
from .normalize import normalize_text, normalize_tree

__all__ = [
    "CacheKey",
    "derive_cache_key",
    "normalize_text",
    "normalize_tree",
]
