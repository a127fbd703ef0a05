from __future__ import annotations

from pydantic import BaseModel, EmailStr, Field, HttpUrl, field_validator

REQUIRED_FIELDS = ("name", "email", "message")


class ContactEmailData(BaseModel):
    """A contact-form submission as it enters the dispatch pipeline.

    Values are untrusted strings; length and format rules are applied by the
    content security gate so every violation can be reported at once.
    """

    name: str = ""
    email: str = ""
    message: str = ""
    phone: str = ""
    company: str = ""
    service_type: str = ""
    subject: str = ""
    budget: str = ""
    timeline: str = ""
    contact_method: str = ""
    best_time_to_reach: str = ""
    website: str = ""
    hear_about_us: str = ""


class ContactRequest(BaseModel):
    name: str = Field(..., min_length=2)
    email: EmailStr
    phone: str = Field(..., min_length=7)
    company: str = Field(..., min_length=2)
    service_type: str = Field(..., min_length=1)
    message: str = Field(..., min_length=10)
    subject: str | None = None
    budget: str = Field(..., min_length=1)
    timeline: str | None = None
    contact_method: str | None = None
    best_time_to_reach: str = Field(..., min_length=1)
    website: HttpUrl | None = None
    hear_about_us: str | None = None
    consent: bool

    @field_validator("website", mode="before")
    @classmethod
    def blank_website_is_missing(cls, v: object) -> object:
        if v == "":
            return None
        return v

    @field_validator("consent")
    @classmethod
    def consent_required(cls, v: bool) -> bool:
        if v is not True:
            raise ValueError("Consent is required")
        return v

    def to_email_data(self) -> ContactEmailData:
        return ContactEmailData(
            name=self.name,
            email=str(self.email),
            message=self.message,
            phone=self.phone,
            company=self.company,
            service_type=self.service_type,
            subject=self.subject or "",
            budget=self.budget,
            timeline=self.timeline or "",
            contact_method=self.contact_method or "",
            best_time_to_reach=self.best_time_to_reach,
            website=str(self.website) if self.website else "",
            hear_about_us=self.hear_about_us or "",
        )


class ContactResponse(BaseModel):
    success: bool = True
    message_id: str
