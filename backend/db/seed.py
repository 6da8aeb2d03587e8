from dotenv import load_dotenv

from backend.api.database import SB

SUBSCRIPTION_PLANS = {
    "free": {"price_eur": 0, "tokens_per_month": 15000},
    "starter_9": {"price_eur": 9, "tokens_per_month": 150000},
    "pro_19": {"price_eur": 19, "tokens_per_month": 350000},
    "premium_29": {"price_eur": 29, "tokens_per_month": 600000},
    "elite_39": {"price_eur": 39, "tokens_per_month": 900000},
    "expert_49": {"price_eur": 49, "tokens_per_month": 1200000},
}

TOKEN_PACKS = {
    "pack_19": {"price_eur": 19, "tokens": 200000},
    "pack_49": {"price_eur": 49, "tokens": 600000},
}

BONUS_RULES = [
    {
        "rule_name": "daily_triple_scan",
        "description": "Scan three meals in a day",
        "period": "daily",
        "condition_type": "event_count",
        "event_type": "meal_scan",
        "threshold": 3,
        "xp_reward": 30,
    },
    {
        "rule_name": "weekly_culinary_explorer",
        "description": "Earn 150 culinary XP in a week",
        "period": "weekly",
        "condition_type": "xp_total",
        "event_category": "culinary",
        "threshold": 150,
        "xp_reward": 75,
    },
    {
        "rule_name": "weekly_all_rounder",
        "description": "Earn XP in four different categories in a week",
        "period": "weekly",
        "condition_type": "distinct_categories",
        "threshold": 4,
        "xp_reward": 100,
    },
    {
        "rule_name": "monthly_faster",
        "description": "Complete ten fasts in a month",
        "period": "monthly",
        "condition_type": "event_count",
        "event_category": "fasting",
        "threshold": 10,
        "xp_reward": 250,
    },
]

LEVEL_TITLES = [
    "Apprenti", "Initié", "Forgeron", "Artisan", "Compagnon",
    "Maître Forgeron", "Champion", "Gardien", "Légende", "Titan",
]


def level_milestones(max_level: int = 50):
    """XP to reach each level grows by 10% per level from a 100 XP base"""
    rows = []
    xp_required = 100
    for level in range(1, max_level + 1):
        title = LEVEL_TITLES[min((level - 1) // 5, len(LEVEL_TITLES) - 1)]
        rows.append({
            "level": level,
            "xp_required": xp_required,
            "title": title,
            "is_major_milestone": level % 5 == 0,
        })
        xp_required = round(xp_required * 1.1)
    return rows


def seed_database():
    """Seed pricing config, bonus rules and level milestones."""
    db = SB.client()

    print("Seeding token pricing config...")
    db.table("token_pricing_config").upsert({
        "config_name": "default",
        "is_active": True,
        "subscription_plans": SUBSCRIPTION_PLANS,
        "token_packs": TOKEN_PACKS,
    }, on_conflict="config_name").execute()

    print("Seeding bonus rules...")
    db.table("bonus_rules").upsert(BONUS_RULES, on_conflict="rule_name").execute()

    print("Seeding level milestones...")
    milestones = level_milestones()
    db.table("level_milestones").upsert(milestones, on_conflict="level").execute()

    print("\n✅ Database seeded successfully!")
    print(f"- {len(SUBSCRIPTION_PLANS)} subscription plans")
    print(f"- {len(BONUS_RULES)} bonus rules")
    print(f"- {len(milestones)} level milestones")


if __name__ == "__main__":
    load_dotenv()
    seed_database()
