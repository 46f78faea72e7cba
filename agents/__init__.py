""" Agents package initialization."""

from .cover_letter_agent import CoverLetterAgent  # noqa: F401
from .fit_analyzer import FitAnalyzer  # noqa: F401
from .job_search import JobSearchAgent, JobSearchClient  # noqa: F401
from .profile_extractor import ProfileExtractor  # noqa: F401
from .resume_extractor import ResumeExtractor  # noqa: F401
