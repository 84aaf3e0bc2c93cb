"""Donor profile → research inputs.

A donor record becomes three things the research loop needs:

- ``initial_query``   the donor's name plus a philanthropy angle
- ``seed_queries``    name + location and name + email searches, which
                      pin down *which* person with that name we mean
- ``research_topic``  the question the final answer must address
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Optional

from core.models import DonorProfile


@dataclass
class ResearchRequest:
    """Inputs for one controller run derived from a donor profile."""

    subject: str
    initial_query: str
    research_topic: str
    seed_queries: list[str] = field(default_factory=list)


def donor_location(donor: DonorProfile) -> Optional[str]:
    """Prefer the state, fall back to the street address."""
    return donor.state or donor.address or None


def seed_queries(donor: DonorProfile) -> list[str]:
    queries = []
    location = donor_location(donor)
    if location:
        queries.append(f"{donor.full_name} {location}")
    if donor.email:
        queries.append(f"{donor.full_name} {donor.email}")
    return queries


def research_topic(donor: DonorProfile, organization_description: str = "nonprofit organization") -> str:
    """Build the donation-angle research question for *donor*."""
    address_parts = [p for p in (donor.address, donor.state) if p]
    address_info = f" living in {', '.join(address_parts)}" if address_parts else ""
    email_info = f" with email {donor.email}" if donor.email else ""
    notes_info = f" Additional information: {donor.notes}" if donor.notes else ""

    return (
        f"What motivates {donor.full_name}{address_info}{email_info} to donate to nonprofits? "
        "Analyze their background, interests, values, and philanthropic history. "
        f"What specific aspects of a {organization_description} would appeal to them "
        f"based on their profile?{notes_info}"
    )


def build_request(donor: DonorProfile, organization_description: str = "nonprofit organization") -> ResearchRequest:
    return ResearchRequest(
        subject=donor.full_name,
        initial_query=f"{donor.full_name} philanthropy",
        research_topic=research_topic(donor, organization_description),
        seed_queries=seed_queries(donor),
    )
