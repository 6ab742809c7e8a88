# Import every mapped class so Base.metadata is complete for create_all / alembic.
from civictrack.models.department import Department, DepartmentHistory
from civictrack.models.category import ReportCategory
from civictrack.models.team import Team
from civictrack.models.user import User, UserRole
from civictrack.models.report import Report, ReportStatus, ReportStatusHistory, ReportType, SubStatus
from civictrack.models.assignment import Assignment, AssigneeType, AssignmentStatus
from civictrack.models.report_support import ReportSupport
from civictrack.models.fact_report import FactReport, FactReportStaging, AnalyticsRefreshRun, RefreshStatus

__all__ = [
    "Department", "DepartmentHistory", "ReportCategory", "Team", "User", "UserRole",
    "Report", "ReportStatus", "ReportStatusHistory", "ReportType", "SubStatus",
    "Assignment", "AssigneeType", "AssignmentStatus", "ReportSupport",
    "FactReport", "FactReportStaging", "AnalyticsRefreshRun", "RefreshStatus",
]
