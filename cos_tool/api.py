"""
FastAPI application exposing expression transformation and rule validation.

Provides endpoints for:
- Injecting label matchers into an expression
- Validating the content of a rule file
"""

import logging
from typing import Dict, List

from fastapi import FastAPI, HTTPException
from pydantic import BaseModel, Field

from .checker import get_checker
from .errors import CosToolError

logger = logging.getLogger(__name__)


# Pydantic models for API requests/responses


class TransformRequest(BaseModel):
    """Request to inject label matchers into an expression."""
    format: str = Field("promql", description="Query dialect (promql or logql)")
    expression: str = Field(..., description="Expression to transform")
    label_matchers: Dict[str, str] = Field(default_factory=dict,
                                           description="Label matchers to inject")


class TransformResponse(BaseModel):
    """Response from the transform endpoint."""
    result: str


class ValidateRequest(BaseModel):
    """Request to validate a rule file."""
    format: str = Field("promql", description="Query dialect (promql or logql)")
    filename: str = Field("rules.yaml", description="Name reported in errors")
    content: str = Field(..., description="Rule file content (YAML)")


class ValidateResponse(BaseModel):
    """Response from the validate endpoint."""
    valid: bool
    groups: int = 0
    errors: List[str] = Field(default_factory=list)


def create_app() -> FastAPI:
    """Create and configure the FastAPI application.

    Returns:
        Configured FastAPI app
    """
    app = FastAPI(
        title="cos-tool API",
        description="Label matcher injection and rule validation for PromQL and LogQL",
        version="1.0.0"
    )

    @app.post("/api/transform", response_model=TransformResponse)
    async def transform(request: TransformRequest) -> TransformResponse:
        """Inject label matchers into every selector of an expression.

        Raises:
            HTTPException: 400 if the expression cannot be transformed
        """
        checker = get_checker(request.format)
        try:
            result = checker.transform(request.expression, request.label_matchers)
        except CosToolError as e:
            raise HTTPException(status_code=400, detail=str(e))
        return TransformResponse(result=result)

    @app.post("/api/validate", response_model=ValidateResponse)
    async def validate(request: ValidateRequest) -> ValidateResponse:
        """Validate a rule file; violations are reported, not raised."""
        checker = get_checker(request.format)
        result = checker.validate_rules(request.filename, request.content)
        logger.debug("Validated %s via API: %d error(s)", request.filename, len(result.errors))
        return ValidateResponse(
            valid=result.is_valid,
            groups=len(result.groups.groups) if result.groups else 0,
            errors=[str(err) for err in result.errors],
        )

    @app.get("/health")
    async def health_check() -> Dict[str, str]:
        """Health check endpoint."""
        return {"status": "healthy"}

    return app


# Create the app instance
app = create_app()
