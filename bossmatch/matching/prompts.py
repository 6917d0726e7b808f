"""
Prompt templates for the simulated interview: two personas and the evaluator.

All three builders are pure: same input, same string, and a missing field
renders as a placeholder instead of raising.
"""
from bossmatch.matching.schemas import CandidateSummary, JobSummary, CompanySummary

NOT_FILLED = '未填写'
NOT_SPECIFIED = '未指定'
NEGOTIABLE = '面议'
NONE_TEXT = '无'

DESCRIPTION_LIMIT = 500

ROLE_LABELS = {
    'candidate': '候选人',
    'employer': '招聘方',
}


def _currency_symbol(currency: str | None) -> str:
    return '$' if (currency or '').upper() == 'USD' else '¥'


def format_salary(job: JobSummary) -> str:
    symbol = _currency_symbol(job.salary_currency)
    if job.salary_min and job.salary_max:
        return f"{symbol}{job.salary_min:,} - {symbol}{job.salary_max:,}"
    if job.salary_min:
        return f"{symbol}{job.salary_min:,}+"
    if job.salary_max:
        return f"最高 {symbol}{job.salary_max:,}"
    return NEGOTIABLE


def _truncate(text: str | None, limit: int = DESCRIPTION_LIMIT) -> str:
    text = text or ''
    return text[:limit] + ('...' if len(text) > limit else '')


def _tags_text(tags) -> str:
    if isinstance(tags, list):
        tags = ','.join(str(t) for t in tags)
    return tags or NONE_TEXT


def build_candidate_persona_prompt(candidate: CandidateSummary, job_title: str,
                                   company_name: str) -> str:
    name = f" {candidate.name}" if candidate.name else ''
    return f"""你是候选人{name}，正在与 {company_name or '未知公司'} 的 HR 进行工作相关的对话，讨论 {job_title} 职位。

你的背景：
- 当前职位：{candidate.title or NOT_FILLED}
- 工作年限：{candidate.years_exp or 0} 年
- 技能：{candidate.skills or NOT_FILLED}
- 个人简介：{candidate.bio or NOT_FILLED}

对话目标：
1. 展示你的技能和经验
2. 了解职位详情和公司情况
3. 表达对职位的兴趣
4. 回答 HR 的问题，展示你的匹配度

对话规则：
- 保持专业，只讨论工作相关话题
- 不要聊兴趣爱好、日常生活等无关内容
- 回答要真实、专业、有针对性
- 主动提问，了解职位详情"""


def build_employer_persona_prompt(job: JobSummary, company: CompanySummary) -> str:
    return f"""你是 {company.name} 的 HR，正在与候选人进行工作相关的对话，讨论 {job.title} 职位。

职位信息：
- 职位名称：{job.title}
- 职位描述：{_truncate(job.description)}
- 工作城市：{job.city or NOT_SPECIFIED}
- 薪资范围：{format_salary(job)}
- 标签：{_tags_text(job.tags)}

公司信息：
- 公司名称：{company.name}
- 公司城市：{company.city or NOT_SPECIFIED}
- 公司简介：{company.intro or NONE_TEXT}

对话目标：
1. 了解候选人的技能、经验和匹配度
2. 介绍职位和公司的优势
3. 回答候选人的问题
4. 评估候选人是否适合这个职位

对话规则：
- 保持专业，只讨论工作相关话题
- 不要聊兴趣爱好、日常生活等无关内容
- 提问要有针对性，评估候选人的能力
- 友好、专业地回应候选人的问题"""


def format_transcript(transcript) -> str:
    """Render turns (Turn models or plain dicts) as `候选人（第N轮）：…` blocks."""
    lines = []
    for entry in transcript:
        if isinstance(entry, dict):
            turn, role, content = entry.get('turn'), entry.get('role'), entry.get('content')
        else:
            turn, role, content = entry.turn, entry.role, entry.content
        label = ROLE_LABELS.get(role, role)
        lines.append(f"{label}（第{turn}轮）：{content or ''}")
    return '\n\n'.join(lines)


def build_evaluation_prompt(candidate: CandidateSummary, job: JobSummary,
                            company: CompanySummary, transcript) -> str:
    transcript = list(transcript)
    return f"""基于以下对话记录，评估候选人与职位的匹配度（0-100分）。

候选人资料：
- 姓名：{candidate.name or NOT_FILLED}
- 当前职位：{candidate.title or NOT_FILLED}
- 工作年限：{candidate.years_exp or 0} 年
- 技能：{candidate.skills or NOT_FILLED}
- 个人简介：{candidate.bio or NOT_FILLED}

职位信息：
- 职位名称：{job.title}
- 职位描述：{_truncate(job.description)}
- 工作城市：{job.city or NOT_SPECIFIED}
- 薪资范围：{format_salary(job)}
- 标签：{_tags_text(job.tags)}

公司：{company.name}

对话记录（{len(transcript)}轮）：
{format_transcript(transcript)}

请只关注工作相关的匹配度，评估以下方面：
1. 技能匹配度
2. 工作经验匹配度
3. 职位要求匹配度
4. 沟通能力和专业度

返回 JSON 格式（只返回 JSON，不要其他文字）：
{{
  "score": 75,
  "reason": "候选人技能匹配度高，工作经验符合要求，沟通专业",
  "strengths": ["技能匹配", "经验相关", "沟通专业"],
  "weaknesses": []
}}"""
