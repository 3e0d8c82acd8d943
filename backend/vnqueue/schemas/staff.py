from typing import Optional, Union

from pydantic import AliasChoices, BaseModel, ConfigDict, Field


class StaffIdentity(BaseModel):
    staff_id: Union[int, str] = Field(validation_alias=AliasChoices("staffId", "staff_id"))
    staff_name: str = Field(validation_alias=AliasChoices("staffName", "staff_name"))
    role: Optional[str] = None
    department_id: Union[int, str] = Field(validation_alias=AliasChoices("departmentId", "department_id"))
    department_name: Optional[str] = Field(default=None, validation_alias=AliasChoices("departmentName", "department_name"))

    model_config = ConfigDict(populate_by_name=True, frozen=True, extra="ignore")


class ApiResponse(BaseModel):
    """
    Acknowledgement of a staff command.

    `skip` may additionally carry the patient's contact details so staff can follow up by phone.
    """
    success: bool = True
    message: str = ""
    queue_number: Optional[str] = Field(default=None, validation_alias=AliasChoices("queueNumber", "queue_number"))
    queue_id: Optional[Union[int, str]] = Field(default=None, validation_alias=AliasChoices("queueId", "queue_id"))
    patient_name: Optional[str] = Field(default=None, validation_alias=AliasChoices("patientName", "patient_name"))
    patient_phone: Optional[str] = Field(default=None, validation_alias=AliasChoices("patientPhone", "phoneNumber", "phone", "patient_phone"))

    model_config = ConfigDict(populate_by_name=True, extra="ignore")
