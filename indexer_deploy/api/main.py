from __future__ import annotations

from fastapi import FastAPI

from indexer_deploy import __version__
from indexer_deploy.api.endpoints import builds, health, metrics_export, provision, release_verify
from indexer_deploy.api.middleware.error_shaping import SafeErrorMiddleware
from indexer_deploy.api.middleware.request_context import RequestContextMiddleware

app = FastAPI(
    title="Indexer Deploy API",
    version=__version__,
)

# ------------------------------------------------------------
# Middleware stack
# Starlette reverses add_middleware order: the LAST call = OUTERMOST wrapper.
#   SafeErrorMiddleware -> RequestContext -> handler
# ------------------------------------------------------------
app.add_middleware(RequestContextMiddleware)
app.add_middleware(SafeErrorMiddleware)

# Read-only surface: plans, rendered Dockerfiles, reports. Builds and
# provisioning themselves only run from the CLI.
app.include_router(health.router)
app.include_router(metrics_export.router)
app.include_router(builds.router)
app.include_router(provision.router)
app.include_router(release_verify.router)
