# ballotbox/catalog.py

# Fixed slate of positions and candidates for this election cycle.
# Loaded once at import time and never mutated.

from collections import namedtuple

Candidate = namedtuple("Candidate", ["id", "name"])
Position = namedtuple("Position", ["id", "title", "candidates"])


def _position(position_id, title, *candidates):
    return Position(position_id, title, tuple(Candidate(cid, name) for cid, name in candidates))


ELECTION_POSITIONS = (
    _position("president", "President",
              ("raphael-iyama", "Hon. Raphael Iyama"),
              ("ogbaji-edor-raymond", "Ogbaji Edor Raymond")),
    _position("vice-president", "Vice President",
              ("usman-ali", "Usman Ali"),
              ("osas", "Osas"),
              ("naomi", "Naomi")),
    _position("provost", "Provost",
              ("austin-audu", "Austin Audu"),
              ("olokpo-godwin", "Olokpo Godwin"),
              ("george", "George")),
    _position("pro", "Public Relations Officer (PRO)",
              ("linus", "Linus"),
              ("oluchi-akpaka", "Oluchi Akpaka"),
              ("huwal-kabiru", "Huwal Kabiru")),
    _position("secretary", "Secretary",
              ("sunday-dsp", "Sunday DSP"),
              ("blessing-odii", "Blessing Odii")),
    _position("assistant-secretary", "Assistant Secretary",
              ("daddy-blinks", "Daddy Blinks"),
              ("hamza", "Hamza")),
    _position("welfare-coordinator", "Welfare/Event Coordinator",
              ("ali-idaewo", "Ali Idaewo"),
              ("esther-mukanche", "Esther Mukanche"),
              ("anthonia-acha", "Anthonia Acha")),
    _position("financial-secretary", "Financial Secretary",
              ("godiya", "Godiya"),
              ("patience-patrick", "Patience Patrick")),
)

_BY_ID = {position.id: position for position in ELECTION_POSITIONS}


def position_ids():
    return [position.id for position in ELECTION_POSITIONS]


def get_position(position_id):
    return _BY_ID.get(position_id)


def is_valid_candidate(position_id, candidate_id):
    position = _BY_ID.get(position_id)
    if position is None:
        return False
    return any(candidate.id == candidate_id for candidate in position.candidates)


def candidate_name(position_id, candidate_id):
    position = _BY_ID.get(position_id)
    if position:
        for candidate in position.candidates:
            if candidate.id == candidate_id:
                return candidate.name
    return None


def find_ballot_problems(votes):
    """
    Check a ballot (position id -> candidate id) against the catalog.

    Returns:
        (missing, invalid): positions with no choice, and positions whose
        key or candidate is not part of the catalog.
    """
    missing = [pid for pid in position_ids() if not votes.get(pid)]
    invalid = sorted(
        pid for pid, cid in votes.items()
        if cid and not is_valid_candidate(pid, cid)
    )
    return missing, invalid


def as_dict():
    """Catalog in a JSON friendly shape for the ballot screen."""
    return [
        {
            "id": position.id,
            "title": position.title,
            "candidates": [{"id": c.id, "name": c.name} for c in position.candidates],
        }
        for position in ELECTION_POSITIONS
    ]
