from .rewriter import (
    ResponseRewriter,
    RewriteContext,
    RewriteRule,
    default_rules,
    rewrite_html,
    rewrite_manifest,
    strip_ad_fragments,
)

__all__ = [
    "ResponseRewriter",
    "RewriteContext",
    "RewriteRule",
    "default_rules",
    "rewrite_html",
    "rewrite_manifest",
    "strip_ad_fragments",
]
