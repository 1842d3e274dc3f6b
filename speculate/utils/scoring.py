"""
Scoring rules for picks, refunds, streak bonuses and levels.

Potential points are computed once, when a pick is made, from the time left
before lock and how popular the chosen option was. For persisted state and
the ledger, see speculate/services/prediction_engine.py and
speculate/services/points_service.py.
"""

import math

BASE_POINTS = 50
EARLY_BONUS_STEP_HOURS = 6
EARLY_BONUS_STEP_POINTS = 10
MAX_POTENTIAL_POINTS = 200

# (probability below, bonus) checked in order
CONTRARIAN_TIERS = (
    (0.20, 40),
    (0.40, 20),
)

# current_streak -> bonus points
STREAK_MILESTONES = {3: 10, 7: 25, 14: 50, 30: 100}

# (name, min lifetime points), ascending
LEVELS = (
    ("Novice", 0),
    ("Apprentice", 100),
    ("Investigator", 500),
    ("Detective", 1500),
    ("Expert Detective", 3500),
    ("Master Detective", 7500),
    ("Legendary", 15000),
)


def community_probability(option_count, total_count):
    """
    Share of picks on an option before this pick.

    With no picks yet every option is treated as a coin flip (0.5).
    """
    if not total_count:
        return 0.5
    return option_count / total_count


def early_bonus(hours_until_lock):
    hours = max(0.0, hours_until_lock)
    return math.floor(hours / EARLY_BONUS_STEP_HOURS) * EARLY_BONUS_STEP_POINTS


def contrarian_bonus(probability):
    for threshold, bonus in CONTRARIAN_TIERS:
        if probability < threshold:
            return bonus
    return 0


def calculate_potential_points(hours_until_lock, probability):
    """
    Calculate potential points for a pick.

    Returns:
        int in [BASE_POINTS, MAX_POTENTIAL_POINTS]

    Args:
        hours_until_lock: hours between the pick and lock (clamped at 0)
        probability: community probability of the chosen option
    """
    total = BASE_POINTS + early_bonus(hours_until_lock) + contrarian_bonus(probability)
    return min(MAX_POTENTIAL_POINTS, total)


def calculate_earned_points(pick, outcome_option_id):
    """Potential points for a correct pick, otherwise 0"""
    if outcome_option_id is not None and pick.option_id == outcome_option_id:
        return pick.potential_points
    return 0


def refund_amount(potential_points):
    """Voided predictions refund half the potential, rounded down"""
    return potential_points // 2


def streak_bonus_for(current_streak):
    return STREAK_MILESTONES.get(current_streak, 0)


def calculate_level(points):
    """Level name and progress towards the next level"""
    points = max(0, points or 0)

    index = 0
    for i, (_, minimum) in enumerate(LEVELS):
        if points >= minimum:
            index = i

    name, minimum = LEVELS[index]
    if index + 1 < len(LEVELS):
        next_name, next_minimum = LEVELS[index + 1]
        progress = {"current": points - minimum, "required": next_minimum - minimum}
    else:
        next_name = None
        progress = {"current": points - minimum, "required": 0}

    return {
        "level": index + 1,
        "name": name,
        "next_level": next_name,
        "progress": progress,
    }
