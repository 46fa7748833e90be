"""Statistical work-pattern analyzers.

Every analyzer is a pure function of an immutable snapshot and the tuning settings, so
they can run side by side without coordination.
"""

import math
from collections import Counter, defaultdict
from dataclasses import dataclass
from datetime import datetime, date, timedelta
from typing import Callable, Dict, List, Sequence, Tuple

from shared.config import AnalyzerTuning
from shared.schemas import (
    DailyMetrics,
    EventAction,
    EventCategory,
    InsightPattern,
    InsightType,
    TrackedEvent,
)

WEEKDAY_NAMES = ("Monday", "Tuesday", "Wednesday", "Thursday", "Friday", "Saturday", "Sunday")

COMPLETION_ACTIONS = {
    EventAction.COMPLETE_TASK.value,
    EventAction.CREATE_PAGE.value,
    EventAction.STORE_MEMORY.value,
}
TASK_ACTIONS = {EventAction.CREATE_TASK.value, EventAction.COMPLETE_TASK.value}
SOLO_CATEGORIES = {EventCategory.KANBAN.value, EventCategory.WIKI.value, EventCategory.MEMORY.value}
COLLABORATION_MARKERS = ("share", "comment", "collaborate")


@dataclass(frozen=True)
class PatternSnapshot:
    user_id: str
    start: datetime
    end: datetime
    events: Tuple[TrackedEvent, ...]
    daily_metrics: Tuple[DailyMetrics, ...]

    @property
    def window_days(self) -> int:
        return max(1, round((self.end - self.start).total_seconds() / 86400))


@dataclass(frozen=True)
class WorkSession:
    start: datetime
    end: datetime
    event_count: int

    @property
    def duration_minutes(self) -> float:
        return (self.end - self.start).total_seconds() / 60


def _mean(values: Sequence[float]) -> float:
    return sum(values) / len(values) if values else 0.0


def format_hour(hour: int) -> str:
    if hour == 0:
        return "12 AM"
    if hour < 12:
        return f"{hour} AM"
    if hour == 12:
        return "12 PM"
    return f"{hour - 12} PM"


def format_hour_range(hours: Sequence[int]) -> str:
    """Collapse hours into readable ranges, e.g. [9, 10, 14] -> '9 AM-10 AM, 2 PM'."""
    if not hours:
        return ""
    ordered = sorted(hours)
    ranges: List[str] = []
    start = end = ordered[0]
    for hour in ordered[1:]:
        if hour == end + 1:
            end = hour
            continue
        ranges.append(format_hour(start) if start == end else f"{format_hour(start)}-{format_hour(end)}")
        start = end = hour
    ranges.append(format_hour(start) if start == end else f"{format_hour(start)}-{format_hour(end)}")
    return ", ".join(ranges)


def week_start(day: date) -> date:
    """Weeks start on Sunday."""
    return day - timedelta(days=(day.weekday() + 1) % 7)


def identify_work_sessions(events: Sequence[TrackedEvent], gap_minutes: float = 30) -> List[WorkSession]:
    if not events:
        return []

    ordered = sorted(event.created_at for event in events)
    sessions: List[WorkSession] = []
    session_start = session_end = ordered[0]
    event_count = 1

    for current in ordered[1:]:
        gap = (current - session_end).total_seconds() / 60
        if gap > gap_minutes:
            sessions.append(WorkSession(session_start, session_end, event_count))
            session_start = current
            event_count = 1
        else:
            event_count += 1
        session_end = current

    sessions.append(WorkSession(session_start, session_end, event_count))
    return sessions


def same_day_gaps(events: Sequence[TrackedEvent]) -> List[float]:
    """Hours between consecutive events, ignoring gaps of a day or more."""
    ordered = sorted(event.created_at for event in events)
    gaps = []
    for previous, current in zip(ordered, ordered[1:]):
        gap = (current - previous).total_seconds() / 3600
        if gap < 24:
            gaps.append(gap)
    return gaps


def analyze_peak_hours(snapshot: PatternSnapshot, tuning: AnalyzerTuning) -> InsightPattern:
    hourly = {hour: {"count": 0, "completions": 0} for hour in range(24)}
    for event in snapshot.events:
        bucket = hourly[event.created_at.hour]
        bucket["count"] += 1
        if event.event_action in COMPLETION_ACTIONS:
            bucket["completions"] += 1

    significant = [
        (hour, bucket["completions"] / bucket["count"])
        for hour, bucket in hourly.items()
        if bucket["count"] >= tuning.min_hour_events
    ]
    ranked = sorted(significant, key=lambda item: item[1], reverse=True)
    peak_count = math.ceil(len(ranked) * tuning.peak_hour_fraction)
    peak_hours = [hour for hour, _ in ranked[:peak_count]]

    recommendation = None
    if peak_hours:
        recommendation = (
            f"Schedule important tasks during {format_hour_range(peak_hours)} when your productivity "
            "is highest. Avoid meetings during these hours when possible."
        )

    return InsightPattern(
        type=InsightType.PEAK_HOURS,
        confidence=tuning.peak_hours.score(len(significant)),
        data={
            "peak_hours": peak_hours,
            "avg_productivity_score": _mean([score for _, score in significant]),
            "significant_hours": len(significant),
            "hourly_breakdown": {str(hour): bucket for hour, bucket in hourly.items()},
            "analysis_window": f"{snapshot.window_days} days",
        },
        recommendation=recommendation,
    )


def analyze_task_patterns(snapshot: PatternSnapshot, tuning: AnalyzerTuning) -> InsightPattern:
    daily: Dict[date, Dict[str, int]] = defaultdict(lambda: {"created": 0, "completed": 0})
    for event in snapshot.events:
        if event.event_category != EventCategory.KANBAN.value or event.event_action not in TASK_ACTIONS:
            continue
        stats = daily[event.created_at.date()]
        if event.event_action == EventAction.CREATE_TASK.value:
            stats["created"] += 1
        else:
            stats["completed"] += 1

    days = [
        {
            "date": day,
            "created": stats["created"],
            "completed": stats["completed"],
            "completion_rate": stats["completed"] / stats["created"] if stats["created"] else 0.0,
        }
        for day, stats in sorted(daily.items())
    ]

    avg_completion_rate = _mean([day["completion_rate"] for day in days])
    best_days: List[str] = []
    for day in days:
        if day["completion_rate"] > avg_completion_rate * 1.2 and day["created"] >= 2:
            name = WEEKDAY_NAMES[day["date"].weekday()]
            if name not in best_days:
                best_days.append(name)
    low_productivity_days = sum(1 for day in days if day["created"] > 0 and day["completion_rate"] < 0.3)

    recommendation = ""
    if best_days:
        recommendation = f"You're most productive on {' and '.join(best_days)}. "
    if low_productivity_days > 3:
        recommendation += "Consider breaking large tasks into smaller chunks to improve completion rates."

    return InsightPattern(
        type=InsightType.TASK_PATTERNS,
        confidence=tuning.task_patterns.score(len(days)),
        data={
            "avg_completion_rate": avg_completion_rate,
            "best_days": best_days,
            "total_tasks_created": sum(day["created"] for day in days),
            "total_tasks_completed": sum(day["completed"] for day in days),
            "low_productivity_days": low_productivity_days,
            "days_observed": len(days),
            "daily_trend": [{**day, "date": day["date"].isoformat()} for day in days[-7:]],
        },
        recommendation=recommendation.strip() or None,
    )


def analyze_collaboration_style(snapshot: PatternSnapshot, tuning: AnalyzerTuning) -> InsightPattern:
    collaboration_events = [
        event for event in snapshot.events
        if any(marker in event.event_action for marker in COLLABORATION_MARKERS)
    ]
    solo_events = sum(1 for event in snapshot.events if event.event_category in SOLO_CATEGORIES)
    ratio = len(collaboration_events) / solo_events if solo_events else 0.0

    if ratio > 0.3:
        style = "Collaborative"
        description = "You actively engage in team collaboration and knowledge sharing"
    elif ratio > 0.1:
        style = "Selective"
        description = "You collaborate when needed but also work well independently"
    else:
        style = "Independent"
        description = "You prefer working independently with minimal collaboration"

    if ratio < 0.05:
        recommendation = (
            "Consider increasing collaboration through comments and sharing to enhance team communication."
        )
    else:
        recommendation = "Your collaboration style is well-balanced. Continue engaging with your team as needed."

    weekly = Counter(week_start(event.created_at.date()).isoformat() for event in collaboration_events)

    return InsightPattern(
        type=InsightType.COLLABORATION_STYLE,
        confidence=tuning.collaboration_style.score(len(collaboration_events)),
        data={
            "style": style,
            "description": description,
            "collaboration_ratio": ratio,
            "collaboration_events": len(collaboration_events),
            "solo_work_events": solo_events,
            "weekly_collaboration": dict(sorted(weekly.items())),
        },
        recommendation=recommendation,
    )


def analyze_feature_usage(snapshot: PatternSnapshot, tuning: AnalyzerTuning) -> InsightPattern:
    usage = Counter(event.event_category for event in snapshot.events)
    total = sum(usage.values())
    if not total:
        return InsightPattern(
            type=InsightType.FEATURE_USAGE,
            confidence=0.0,
            data={"total_interactions": 0},
            recommendation="Start using the workspace features to get usage insights.",
        )

    shares = {feature: count / total * 100 for feature, count in usage.most_common()}
    primary_feature, primary_share = next(iter(shares.items()))
    underutilized = [feature for feature, share in shares.items() if share < 10]

    recommendation = ""
    if primary_share > 70:
        recommendation = f"You heavily use {primary_feature}. "
    if underutilized:
        recommendation += f"Consider exploring {', '.join(underutilized)} to enhance your productivity workflow."

    return InsightPattern(
        type=InsightType.FEATURE_USAGE,
        confidence=tuning.feature_usage.score(total),
        data={
            "primary_feature": primary_feature,
            "feature_distribution": dict(usage),
            "underutilized_features": underutilized,
            "total_interactions": total,
            "diversity_score": 1 - primary_share / 100,
        },
        recommendation=recommendation.strip() or None,
    )


def group_metrics_by_week(metrics: Sequence[DailyMetrics]) -> List[dict]:
    weeks: Dict[date, dict] = {}
    for metric in metrics:
        key = week_start(metric.date)
        week = weeks.setdefault(
            key,
            {"week": key.isoformat(), "tasks_created": 0, "tasks_completed": 0, "actions_performed": 0, "days": 0},
        )
        week["tasks_created"] += metric.tasks_created
        week["tasks_completed"] += metric.tasks_completed
        week["actions_performed"] += metric.actions_performed
        week["days"] += 1
    return [weeks[key] for key in sorted(weeks)]


def weekly_score(week: dict) -> float:
    completion_rate = week["tasks_completed"] / week["tasks_created"] if week["tasks_created"] else 0.0
    activity_score = week["actions_performed"] / 7
    return completion_rate * 0.7 + min(activity_score / 10, 1) * 0.3


def analyze_productivity_trends(snapshot: PatternSnapshot, tuning: AnalyzerTuning) -> InsightPattern:
    weeks = group_metrics_by_week(snapshot.daily_metrics)
    if len(weeks) < 2:
        return InsightPattern(
            type=InsightType.PRODUCTIVITY_TRENDS,
            confidence=tuning.insufficient_trend_confidence,
            data={"trend": "insufficient_data", "weeks_observed": len(weeks)},
            recommendation="Continue using the system to generate trend insights.",
        )

    scores = [weekly_score(week) for week in weeks]
    half = len(scores) // 2
    first_half_avg = _mean(scores[:half])
    second_half_avg = _mean(scores[half:])
    if first_half_avg:
        trend_percentage = (second_half_avg - first_half_avg) / first_half_avg * 100
    else:
        trend_percentage = 100.0 if second_half_avg > 0 else 0.0

    if trend_percentage > 10:
        trend = "improving"
        recommendation = "Great progress! Your productivity is trending upward. Keep up the momentum."
    elif trend_percentage < -10:
        trend = "declining"
        recommendation = (
            "Your productivity has declined recently. Consider reviewing your workflow and removing blockers."
        )
    else:
        trend = "stable"
        recommendation = "Your productivity is consistent. Look for opportunities to optimize your most frequent tasks."

    return InsightPattern(
        type=InsightType.PRODUCTIVITY_TRENDS,
        confidence=tuning.productivity_trends.score(len(weeks)),
        data={
            "trend": trend,
            "trend_percentage": trend_percentage,
            "weekly_scores": scores,
            "current_score": scores[-1],
            "avg_score": _mean(scores),
            "weeks_observed": len(weeks),
        },
        recommendation=recommendation,
    )


def analyze_focus_patterns(snapshot: PatternSnapshot, tuning: AnalyzerTuning) -> InsightPattern:
    sessions = identify_work_sessions(snapshot.events, tuning.session_gap_minutes)
    focus_sessions = [
        session for session in sessions
        if session.duration_minutes > tuning.focus_min_minutes and session.event_count > tuning.focus_min_events
    ]
    avg_focus_time = _mean([session.duration_minutes for session in focus_sessions])
    longest_session = max((session.duration_minutes for session in sessions), default=0.0)

    if avg_focus_time < 45:
        recommendation = "Consider implementing longer focus blocks. Try the Pomodoro Technique or time-blocking."
    elif avg_focus_time > 180:
        recommendation = "You have excellent focus! Consider taking regular breaks to maintain energy levels."
    else:
        recommendation = "Your focus patterns are healthy. Maintain consistent work sessions."

    return InsightPattern(
        type=InsightType.FOCUS_PATTERNS,
        confidence=tuning.focus_patterns.score(len(sessions)),
        data={
            "avg_focus_time": avg_focus_time,
            "longest_session": longest_session,
            "focus_score": min(avg_focus_time / tuning.focus_cap_minutes, 1),
            "total_sessions": len(sessions),
            "focus_sessions": len(focus_sessions),
            "avg_session_length": _mean([session.duration_minutes for session in sessions]),
        },
        recommendation=recommendation,
    )


def analyze_workload_distribution(snapshot: PatternSnapshot, tuning: AnalyzerTuning) -> InsightPattern:
    workloads = list(Counter(event.created_at.date() for event in snapshot.events).values())
    if not workloads:
        return InsightPattern(
            type=InsightType.WORKLOAD_DISTRIBUTION,
            confidence=0.0,
            data={"working_days": 0},
            recommendation="Not enough activity to assess your workload distribution yet.",
        )

    avg_workload = _mean(workloads)
    variance = _mean([(workload - avg_workload) ** 2 for workload in workloads])
    consistency = 1 - min(variance / (avg_workload * avg_workload), 1)
    max_workload = max(workloads)

    if consistency < 0.3:
        recommendation = "Your workload varies significantly. Consider distributing tasks more evenly across days."
    elif max_workload > avg_workload * 2:
        recommendation = "You have some very heavy workload days. Try to spread tasks more evenly."
    else:
        recommendation = "Your workload distribution is well-balanced."

    return InsightPattern(
        type=InsightType.WORKLOAD_DISTRIBUTION,
        confidence=tuning.workload_distribution.score(len(workloads)),
        data={
            "avg_daily_workload": avg_workload,
            "max_workload": max_workload,
            "min_workload": min(workloads),
            "consistency": consistency,
            "working_days": len(workloads),
            "variance": variance,
        },
        recommendation=recommendation,
    )


def analyze_procrastination_patterns(snapshot: PatternSnapshot, tuning: AnalyzerTuning) -> InsightPattern:
    actions = Counter(event.event_action for event in snapshot.events)
    created = actions[EventAction.CREATE_TASK.value]
    completed = actions[EventAction.COMPLETE_TASK.value]
    incomplete = created - completed
    procrastination_score = incomplete / created if created else 0.0
    avg_gap = _mean(same_day_gaps(snapshot.events))

    if procrastination_score > 0.6:
        recommendation = "You create many tasks but complete fewer. Try breaking tasks into smaller, actionable items."
    elif avg_gap > 4:
        recommendation = "You have long gaps between activities. Consider setting reminders or time blocks."
    else:
        recommendation = "Your task completion patterns look healthy."

    return InsightPattern(
        type=InsightType.PROCRASTINATION_PATTERNS,
        confidence=tuning.procrastination_patterns.score(created),
        data={
            "incomplete_tasks": incomplete,
            "procrastination_score": procrastination_score,
            "avg_session_gap_hours": avg_gap,
            "task_completion_rate": 1 - procrastination_score,
            "total_tasks_created": created,
        },
        recommendation=recommendation,
    )


Analyzer = Callable[[PatternSnapshot, AnalyzerTuning], InsightPattern]

ANALYZERS: Dict[InsightType, Analyzer] = {
    InsightType.PEAK_HOURS: analyze_peak_hours,
    InsightType.TASK_PATTERNS: analyze_task_patterns,
    InsightType.COLLABORATION_STYLE: analyze_collaboration_style,
    InsightType.FEATURE_USAGE: analyze_feature_usage,
    InsightType.PRODUCTIVITY_TRENDS: analyze_productivity_trends,
    InsightType.FOCUS_PATTERNS: analyze_focus_patterns,
    InsightType.WORKLOAD_DISTRIBUTION: analyze_workload_distribution,
    InsightType.PROCRASTINATION_PATTERNS: analyze_procrastination_patterns,
}
