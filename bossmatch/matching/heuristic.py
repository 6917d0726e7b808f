"""
Heuristic match scorer. No AI, no I/O.

Used for browsing and ranking before (or instead of) an AI interview.

Formula (0–100):
  0.35 * domain + 0.30 * skills + 0.20 * experience + 0.10 * city + 0.05 * openness
normalised by the weights actually applied.
"""
import re

from bossmatch.matching.schemas import CandidateSummary, JobSummary

WEIGHTS = {
    'domain': 0.35,
    'skills': 0.30,
    'experience': 0.20,
    'city': 0.10,
    'openness': 0.05,
}

TECH_KEYWORDS = [
    "java", "python", "javascript", "typescript", "react", "vue", "angular",
    "node", "spring", "后端", "前端", "全栈", "开发", "工程师", "程序员",
    "算法", "架构", "系统", "软件", "编程", "代码", "技术",
    "engineer", "developer", "frontend", "backend", "fullstack", "devops",
]

NON_TECH_KEYWORDS = [
    "运营", "市场", "销售", "客服", "行政", "人事", "财务", "会计",
    "设计", "美工", "文案", "编辑", "策划", "推广", "商务",
    "sales", "marketing", "accounting", "finance", "customer service", "copywriter",
]

TIER1_CITIES = [
    "北京", "上海", "广州", "深圳", "杭州",
    "beijing", "shanghai", "guangzhou", "shenzhen", "hangzhou",
]

_SPLIT_RE = re.compile(r'[,，、]')
_CITY_SUFFIX_RE = re.compile(r'市|省')
_NUMBER_RE = re.compile(r'(\d+)')
_YEARS_MARKERS = ('年', 'year')


def split_tokens(value, lower: bool = True) -> list[str]:
    """Split a comma / 全角逗号 / 顿号 separated string (or list) into trimmed tokens."""
    if not value:
        return []
    items = value if isinstance(value, list) else _SPLIT_RE.split(value)
    tokens = [str(t).strip() for t in items]
    return [t.lower() if lower else t for t in tokens if t]


def _job_text(job: JobSummary) -> str:
    tags = ','.join(job.tags) if isinstance(job.tags, list) else (job.tags or '')
    return f"{job.title} {job.description or ''} {tags}".lower()


def domain_score(candidate: CandidateSummary, job: JobSummary) -> int:
    candidate_skills = (candidate.skills or '').lower()
    candidate_title = (candidate.title or '').lower()
    job_text = _job_text(job)

    candidate_is_tech = any(k in candidate_skills or k in candidate_title for k in TECH_KEYWORDS)
    job_is_tech = any(k in job_text for k in TECH_KEYWORDS)
    job_is_non_tech = any(k in job_text for k in NON_TECH_KEYWORDS)

    # Severe mismatch across categories
    if candidate_is_tech and job_is_non_tech:
        return 10
    if not candidate_is_tech and job_is_tech:
        return 15

    skills = split_tokens(candidate.skills)
    if skills:
        matched = sum(
            1 for s in skills
            if s in job_text or (len(s) >= 2 and s[:2] in job_text)
        )
        return min(100, round(60 + matched / len(skills) * 40))

    if candidate_is_tech and job_is_tech:
        return 60
    return 50


def skills_score(candidate_skills, job_tags) -> int:
    tags = split_tokens(job_tags)
    skills = split_tokens(candidate_skills)
    if not skills or not tags:
        return 50

    matched = sum(1 for s in skills if any(t in s or s in t for t in tags))
    return min(100, round(matched / len(skills) * 100))


def required_years(job_tags) -> int | None:
    """First integer in a tag mentioning 年/year. `应届` carries no number."""
    for tag in split_tokens(job_tags):
        if any(marker in tag for marker in _YEARS_MARKERS):
            match = _NUMBER_RE.search(tag)
            if match:
                return int(match.group(1))
    return None


def experience_score(years_exp: int | None, job_tags) -> int:
    required = required_years(job_tags)
    if not required:
        return 70

    diff = abs((years_exp or 0) - required)
    if diff == 0:
        return 100
    if diff <= 1:
        return 90
    if diff <= 2:
        return 70
    if diff <= 3:
        return 50
    return max(20, 100 - diff * 10)


def _normalise_city(city: str) -> str:
    return _CITY_SUFFIX_RE.sub('', city.strip().lower())


def city_score(candidate_city: str | None, job_city: str | None) -> int:
    if not candidate_city or not job_city:
        return 50

    if _normalise_city(candidate_city) == _normalise_city(job_city):
        return 100

    candidate_tier1 = any(c in candidate_city.lower() for c in TIER1_CITIES)
    job_tier1 = any(c in job_city.lower() for c in TIER1_CITIES)
    if candidate_tier1 and job_tier1:
        return 60

    return 30


def score_breakdown(candidate: CandidateSummary, job: JobSummary) -> dict:
    return {
        'domain': domain_score(candidate, job),
        'skills': skills_score(candidate.skills, job.tags),
        'experience': experience_score(candidate.years_exp, job.tags),
        'city': city_score(candidate.city, job.city),
        'openness': 100 if job.status == 'open' else 0,
    }


def calculate_match_score(candidate: CandidateSummary, job: JobSummary) -> int:
    breakdown = score_breakdown(candidate, job)
    total = sum(breakdown[k] * WEIGHTS[k] for k in breakdown)
    weight_sum = sum(WEIGHTS[k] for k in breakdown)
    return round(total / weight_sum)


def sort_jobs_by_match_score(scored: list[dict]) -> list[dict]:
    return sorted(scored, key=lambda item: item['match_score'], reverse=True)


def sort_candidates_by_match_score(scored: list[dict]) -> list[dict]:
    return sorted(scored, key=lambda item: item['match_score'], reverse=True)
