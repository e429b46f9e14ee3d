from enum import Enum


class UserRole(str, Enum):
    ADMIN = "admin"
    TECHNICAL = "technical"
    TEACHER = "teacher"
    STUDENT = "student"
    PARENT = "parent"
