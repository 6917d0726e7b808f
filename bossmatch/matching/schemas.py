"""
Read-only views of profiles, jobs and companies used by the matching core.

Built from ORM rows with `model_validate(row)`; the prompt builder and the
heuristic scorer only ever see these.
"""
from pydantic import BaseModel, ConfigDict


class CandidateSummary(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    name: str | None = None
    title: str | None = None
    city: str | None = None
    years_exp: int | None = None
    skills: str | None = None
    bio: str | None = None


class JobSummary(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    title: str
    description: str | None = ''
    city: str | None = None
    salary_min: int | None = None
    salary_max: int | None = None
    salary_currency: str | None = None
    tags: str | list[str] | None = None
    status: str | None = 'open'


class CompanySummary(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    name: str = '未知公司'
    city: str | None = None
    intro: str | None = None
