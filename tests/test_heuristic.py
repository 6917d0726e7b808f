import pytest

from bossmatch.matching.heuristic import (
    calculate_match_score,
    city_score,
    domain_score,
    experience_score,
    required_years,
    score_breakdown,
    skills_score,
    sort_candidates_by_match_score,
    sort_jobs_by_match_score,
    split_tokens,
)
from bossmatch.matching.schemas import CandidateSummary, JobSummary


@pytest.fixture
def frontend_candidate():
    return CandidateSummary(
        title='Frontend Engineer', years_exp=3, skills='React,TypeScript', city='Hangzhou',
    )


@pytest.fixture
def frontend_job():
    return JobSummary(
        title='Frontend Engineer',
        description='React + TypeScript 前端开发',
        tags='React,3年',
        city='Hangzhou',
        status='open',
    )


def test_full_match_lands_in_top_band(frontend_candidate, frontend_job):
    score = calculate_match_score(frontend_candidate, frontend_job)
    assert 80 <= score <= 100
    assert score == 85


def test_full_match_breakdown(frontend_candidate, frontend_job):
    assert score_breakdown(frontend_candidate, frontend_job) == {
        'domain': 100,
        'skills': 50,
        'experience': 100,
        'city': 100,
        'openness': 100,
    }


def test_happy_path_scenario_without_description_scores_78(frontend_candidate):
    job = JobSummary(title='Frontend Engineer', tags='React,3年', city='Hangzhou', status='open')
    # Only React appears in the job text, so domain is 80 and the total sits just under 80
    assert domain_score(frontend_candidate, job) == 80
    assert calculate_match_score(frontend_candidate, job) == 78


def test_category_mismatch_scores_low():
    candidate = CandidateSummary(skills='Java,Spring,后端')
    job = JobSummary(title='销售经理')

    assert domain_score(candidate, job) <= 15
    assert calculate_match_score(candidate, job) < 50


def test_non_tech_candidate_for_tech_job():
    candidate = CandidateSummary(title='市场专员', skills='活动策划')
    job = JobSummary(title='后端开发工程师')
    assert domain_score(candidate, job) == 15


def test_score_is_deterministic_and_bounded(frontend_candidate, frontend_job):
    scores = {calculate_match_score(frontend_candidate, frontend_job) for _ in range(5)}
    assert len(scores) == 1

    empty = calculate_match_score(CandidateSummary(), JobSummary(title=''))
    assert 0 <= empty <= 100


def test_closed_job_loses_openness(frontend_candidate, frontend_job):
    closed = frontend_job.model_copy(update={'status': 'closed'})
    assert score_breakdown(frontend_candidate, closed)['openness'] == 0
    assert calculate_match_score(frontend_candidate, closed) < calculate_match_score(
        frontend_candidate, frontend_job)


def test_split_tokens_handles_all_separators():
    assert split_tokens('React，TypeScript、Node.js, Vue') == ['react', 'typescript', 'node.js', 'vue']
    assert split_tokens(['A', ' B ', '']) == ['a', 'b']
    assert split_tokens(None) == []


def test_skills_score():
    assert skills_score('React,Vue', 'React,3年') == 50
    assert skills_score('React,TypeScript', ['react', 'typescript']) == 100
    assert skills_score('', 'React') == 50
    assert skills_score('React', None) == 50


def test_required_years():
    assert required_years('React,3-5年') == 3
    assert required_years('5 years,Go') == 5
    assert required_years('应届,React') is None
    assert required_years(None) is None


@pytest.mark.parametrize('years_exp, expected', [
    (3, 100),
    (4, 90),
    (5, 70),
    (0, 50),
    (8, 50),
    (12, 20),
])
def test_experience_score_bands(years_exp, expected):
    assert experience_score(years_exp, 'React,3年') == expected


def test_experience_without_requirement_is_neutral():
    assert experience_score(10, 'React') == 70
    assert experience_score(None, '应届') == 70


def test_city_score():
    assert city_score('上海市', '上海') == 100
    assert city_score('Hangzhou', 'hangzhou') == 100
    assert city_score('北京', '深圳') == 60
    assert city_score('成都', '深圳') == 30
    assert city_score(None, '深圳') == 50


def test_sorting_is_descending():
    jobs = [{'job_id': 'a', 'match_score': 40}, {'job_id': 'b', 'match_score': 90},
            {'job_id': 'c', 'match_score': 65}]
    assert [j['job_id'] for j in sort_jobs_by_match_score(jobs)] == ['b', 'c', 'a']

    candidates = [{'user_id': 'x', 'match_score': 10}, {'user_id': 'y', 'match_score': 70}]
    assert [c['user_id'] for c in sort_candidates_by_match_score(candidates)] == ['y', 'x']
