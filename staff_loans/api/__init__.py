"""
Staff Loans API Application Factory
"""

from typing import Optional

import uvicorn
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from .. import __version__
from ..config import get_config
from ..logging_config import setup_logging
from ..service import LoanService
from .admin import router as admin_router
from .employees import router as employees_router
from .loans import router as loans_router
from .payroll import router as payroll_router
from .products import router as products_router


def create_app(service: Optional[LoanService] = None) -> FastAPI:
    """
    Create and configure the FastAPI application

    Args:
        service: LoanService to serve; built from configuration when omitted
    """
    app = FastAPI(
        title="Staff Loans API",
        description="Employee loan lifecycle: eligibility, approvals, disbursal and payroll recovery",
        version=__version__,
        docs_url="/docs",
        redoc_url="/redoc"
    )
    app.state.loan_service = service or LoanService.from_config()

    # Add CORS middleware
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],  # Configure appropriately for production
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Include routers
    app.include_router(products_router, prefix="/products", tags=["Products"])
    app.include_router(loans_router, prefix="/loans", tags=["Loans"])
    app.include_router(employees_router, prefix="/employees", tags=["Employees"])
    app.include_router(payroll_router, prefix="/payroll", tags=["Payroll"])
    app.include_router(admin_router, prefix="/admin", tags=["Admin"])

    @app.on_event("shutdown")
    async def close_service():
        app.state.loan_service.close()

    # Health check endpoint
    @app.get("/health")
    async def health_check():
        """Health check endpoint"""
        return {
            "status": "healthy",
            "service": "staff_loans_api",
            "version": __version__
        }

    # Root endpoint
    @app.get("/")
    async def get_api_info():
        """Get API information"""
        return {
            "name": "Staff Loans API",
            "version": __version__,
            "description": "Employee loan lifecycle engine",
            "endpoints": {
                "docs": "/docs",
                "health": "/health",
                "products": "/products",
                "loans": "/loans",
                "employees": "/employees",
                "payroll": "/payroll",
                "admin": "/admin",
            }
        }

    return app


def run_server(host: Optional[str] = None, port: Optional[int] = None, debug: bool = False):
    """Run the FastAPI server with the configured storage and logging"""
    config = get_config()
    setup_logging(config.log_level, config.log_format, config.log_file)
    uvicorn.run(
        "staff_loans.api:create_app",
        factory=True,
        host=host or config.api_host,
        port=port or config.api_port,
        workers=config.api_workers,
        reload=debug,
        log_level=config.log_level.lower()
    )
