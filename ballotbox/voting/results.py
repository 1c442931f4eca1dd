# ballotbox/voting/results.py

# Presentation helpers over a tally (positionId -> candidateId -> count).

import csv
import io
from datetime import datetime, timezone

from ballotbox import catalog


def ranked_results(tally, position_id):
    """
    Candidates of `position_id` with votes and percentage, highest first.

    Ties are broken by candidate id so the order is stable between refreshes.
    """
    position = catalog.get_position(position_id)
    if position is None:
        return []
    counts = tally.get(position_id, {})
    total = sum(counts.get(c.id, 0) for c in position.candidates)
    rows = []
    for candidate in position.candidates:
        votes = counts.get(candidate.id, 0)
        rows.append({
            "id": candidate.id,
            "name": candidate.name,
            "votes": votes,
            "percentage": round(votes * 100 / total, 1) if total else 0.0,
        })
    rows.sort(key=lambda row: (-row["votes"], row["id"]))
    return rows


def winner(tally, position_id):
    rows = ranked_results(tally, position_id)
    if not rows or rows[0]["votes"] == 0:
        return None
    return rows[0]


def total_votes(tally):
    return sum(sum(counts.values()) for counts in tally.values())


def export_results_csv(tally, exported_at=None):
    exported_at = exported_at or datetime.now(timezone.utc)
    buffer = io.StringIO()
    writer = csv.writer(buffer, lineterminator="\n")

    writer.writerow(["Position", "Candidate", "Votes", "Percentage"])
    for position in catalog.ELECTION_POSITIONS:
        for row in ranked_results(tally, position.id):
            writer.writerow([position.title, row["name"], row["votes"], f"{row['percentage']}%"])
        writer.writerow([])

    writer.writerow(["--- SUMMARY ---"])
    writer.writerow(["Position", "Winner", "Votes"])
    for position in catalog.ELECTION_POSITIONS:
        top = winner(tally, position.id)
        if top:
            writer.writerow([position.title, top["name"], top["votes"]])

    writer.writerow([])
    writer.writerow(["--- ELECTION INFO ---"])
    writer.writerow(["Export Date", exported_at.isoformat()])
    writer.writerow(["Total Votes Cast", total_votes(tally)])
    writer.writerow(["Total Positions", len(catalog.ELECTION_POSITIONS)])
    return buffer.getvalue()
