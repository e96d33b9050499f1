# utils/identity.py
"""
Synthetic consumer identities for conversations created with fake names
"""

import re
import uuid
from dataclasses import dataclass
from typing import Optional

from faker import Faker

_fake = Faker()

EMAIL_DOMAINS = ("gmail.com", "outlook.com", "yahoo.com", "icloud.com", "hotmail.com")


@dataclass
class SyntheticPerson:
    first_name: str
    last_name: str
    email: str
    ext_consumer_id: str

    @property
    def full_name(self) -> str:
        return f"{self.first_name} {self.last_name}"


def create_email(first_name: str, last_name: str, faker: Optional[Faker] = None) -> str:
    """Plausible personal email derived from a name"""
    faker = faker or _fake
    local = re.sub(r'[^a-z0-9.]', '', f"{first_name}.{last_name}".lower())
    suffix = faker.random_int(min=1, max=99)
    return f"{local}{suffix}@{faker.random_element(EMAIL_DOMAINS)}"


def generate_person(faker: Optional[Faker] = None) -> SyntheticPerson:
    faker = faker or _fake
    first_name = faker.first_name()
    last_name = faker.last_name()
    return SyntheticPerson(
        first_name=first_name,
        last_name=last_name,
        email=create_email(first_name, last_name, faker),
        ext_consumer_id=str(uuid.uuid4()),
    )
