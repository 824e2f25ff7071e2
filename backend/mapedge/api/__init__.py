# Router aggregator – import each route module here and expose ``api_router``
# for convenient inclusion in the FastAPI app.  Image proxy routes live at the
# site root and are mounted separately by ``mapedge.main``.

from fastapi import APIRouter

from . import routes_jobs, routes_publish


api_router = APIRouter()
api_router.include_router(routes_publish.router, prefix="/publish", tags=["publish"])
api_router.include_router(routes_jobs.router, prefix="/jobs", tags=["jobs"])
