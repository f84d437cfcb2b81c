from pydantic import BaseModel, EmailStr, Field


class RegisterUser(BaseModel):
    username: str = Field(min_length=1, max_length=50)
    email: EmailStr
    password: str


class LoginUser(BaseModel):
    email: EmailStr
    password: str
