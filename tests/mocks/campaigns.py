"""Campaign and metric fixtures shared by detector and optimizer tests."""

from datetime import timedelta

from autopilot.models import to_iso


def make_snapshots(entity_id, ratios, start, opens=100, step=timedelta(days=7)):
    """Snapshots newest first; ratios[i] is clicks/opens of the i-th newest send."""
    docs = []
    for i, ratio in enumerate(ratios):
        sent = start - step * i
        docs.append({
            "entity_id": entity_id,
            "timestamp": to_iso(sent + timedelta(hours=1)),
            "send_timestamp": to_iso(sent),
            "opens": opens,
            "clicks": int(round(ratio * opens)),
            "conversions": 0,
        })
    return docs


async def seed_campaign(store, campaign_id, owner_id, snapshots, **fields):
    campaign = {
        "owner_id": owner_id,
        "status": "active",
        "channel_type": "email",
        "schedule": {"day": 0, "hour": 9},
        "has_active_test": False,
        "content": "Original campaign copy",
        "subject": "Original subject",
        "industry": "Technology",
        "company_size": 120,
    }
    campaign.update(fields)
    await store.set("campaigns", campaign_id, campaign)
    for i, snapshot in enumerate(snapshots):
        await store.set("campaign_metrics", f"{campaign_id}_{i}", snapshot)
