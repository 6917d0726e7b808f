from prometheus_client import Counter, Histogram

# Chat capability
chat_latency = Histogram(
    'secondme_chat_latency_seconds',
    'SecondMe chat call latency',
    ['party'],
    buckets=(1, 2, 5, 10, 30, 60, 120)
)

chat_errors = Counter(
    'secondme_chat_errors_total',
    'SecondMe chat failures',
    ['error_type']  # transport, http, provider, no_session
)

stream_frames_skipped = Counter(
    'secondme_stream_frames_skipped_total',
    'Malformed stream frames ignored while reading a chat response'
)

# Conversations
conversation_turns = Counter(
    'ai_match_conversation_turns_total',
    'Turns appended to AI match conversations',
    ['role']
)

conversations_completed = Counter(
    'ai_match_conversations_completed_total',
    'Conversations that reached the configured turn count'
)

conversations_failed = Counter(
    'ai_match_conversations_failed_total',
    'Conversations marked failed',
    ['reason']  # chat, state
)

# Evaluation
evaluation_scores = Histogram(
    'ai_match_evaluation_score',
    'AI evaluation scores',
    buckets=(20, 40, 60, 80, 100)
)

evaluation_parse_failures = Counter(
    'ai_match_evaluation_parse_failures_total',
    'Evaluation responses that fell back to the degraded result'
)

matches_unlocked = Counter(
    'ai_match_matches_unlocked_total',
    'Matches created or updated because the score cleared the threshold'
)

# Heuristic scorer
heuristic_scores = Histogram(
    'heuristic_match_score',
    'Heuristic match scores served by recommendations',
    ['side'],  # jobs, candidates
    buckets=(20, 40, 60, 80, 100)
)
