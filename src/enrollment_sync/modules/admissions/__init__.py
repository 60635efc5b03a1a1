"""
Admissions Module

Enquiry and Admission lifecycle on top of the backend of record:
1. Enquiry verification, status changes and one-way conversion
2. Admission verification, document audit and document requests
3. Document-gated enrollment finalization

API Endpoints:
- GET /enrollment/enquiries/{id}/can-convert
- POST /enrollment/enquiries/{id}/convert
- POST /enrollment/enquiries/{id}/status
- POST /enrollment/admissions/{id}/finalize
- POST /enrollment/admissions/{id}/document-requests
- POST /enrollment/document-requirements/{id}/verify
- POST /enrollment/document-requirements/{id}/reject
"""

from .router import router
from .service import ConversionStateMachine

__all__ = ["router", "ConversionStateMachine"]
