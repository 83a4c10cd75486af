"""FastAPI backend for the freightlens report builder.

Wraps the report agent in an HTTP API with a stable JSON contract for the
dashboard UI.
"""

import os
from pathlib import Path

from fastapi import FastAPI, HTTPException
from fastapi.middleware.cors import CORSMiddleware

from freightlens import __version__
from freightlens.agent.contracts import GenerateReportRequest, GenerateReportResponse
from freightlens.core.exceptions import AppError
from freightlens.llm.router import get_current_config
from freightlens.orchestrator.runtime import OrchestratorConfig, ReportOrchestrator
from freightlens.tools.definitions import tool_definitions
from freightlens.utils.logging import get_logger


LOGGER = get_logger(__name__)

DEFAULT_DB_PATH = "./data/freightlens.duckdb"


def create_app(
    db_path: Path | str | None = None,
    config: OrchestratorConfig | None = None,
) -> FastAPI:
    """Build the API app bound to one DuckDB database."""
    db_file = Path(db_path or os.environ.get("FL_DB_PATH", DEFAULT_DB_PATH))
    orchestrator = ReportOrchestrator(db_file, config)

    app = FastAPI(title="freightlens API", version=__version__)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=os.environ.get("FL_CORS_ORIGINS", "http://localhost:3000,http://localhost:5173").split(","),
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.get("/health")
    async def health_check():
        """Health check endpoint."""
        return {
            "status": "ok",
            "db_exists": db_file.exists(),
            "llm_provider": get_current_config()["provider"],
        }

    @app.get("/tools")
    async def list_tools():
        """Tool names and JSON input schemas the agent can call."""
        return {"tools": tool_definitions()}

    @app.post("/generate-report", response_model=GenerateReportResponse)
    async def generate_report(request: GenerateReportRequest):
        """Run one agent turn and return the report, message and tool log."""
        if not request.prompt.strip():
            raise HTTPException(status_code=400, detail="Prompt cannot be empty")
        if not db_file.exists():
            raise HTTPException(
                status_code=500,
                detail=f"Database not found at {db_file}. Run 'freightlens init-db' first.",
            )
        try:
            return await orchestrator.generate_report(request)
        except AppError as e:
            LOGGER.error("Report generation failed for customer %s: %s", request.customer_id, e)
            raise HTTPException(status_code=500, detail="Report generation failed. Please try again.") from e

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000, log_level="info")
