import sqlite3

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel

from backend.security import require_session
from database.db import (
    add_course,
    add_student,
    enroll_student,
    get_course_by_id,
    get_enrolled_student_ids,
    get_student_by_id,
    get_students_by_ids,
)

router = APIRouter(dependencies=[Depends(require_session)])


class CourseCreate(BaseModel):
    name: str


class StudentCreate(BaseModel):
    code: str
    full_name: str


class EnrollmentCreate(BaseModel):
    student_id: int


@router.post("/courses")
def create_course(payload: CourseCreate):
    name = payload.name.strip()
    if not name:
        raise HTTPException(status_code=400, detail="Course name is required.")
    new_id = add_course(name)
    return {"id": new_id, "name": name}


@router.get("/courses/{course_id}/students")
def course_students(course_id: int):
    if not get_course_by_id(course_id):
        raise HTTPException(status_code=404, detail="Course not found.")
    rows = get_students_by_ids(get_enrolled_student_ids(course_id))
    return [{"id": r[0], "code": r[1], "full_name": r[2]} for r in rows]


@router.post("/courses/{course_id}/enrollments")
def create_enrollment(course_id: int, payload: EnrollmentCreate):
    if not get_course_by_id(course_id):
        raise HTTPException(status_code=404, detail="Course not found.")
    if not get_student_by_id(payload.student_id):
        raise HTTPException(status_code=404, detail="Student not found.")
    enrollment_id = enroll_student(course_id, payload.student_id)
    return {"id": enrollment_id, "course_id": course_id, "student_id": payload.student_id, "active": True}


@router.post("/students")
def create_student(payload: StudentCreate):
    code = payload.code.strip()
    full_name = payload.full_name.strip()
    if not code or not full_name:
        raise HTTPException(status_code=400, detail="All fields are required.")

    try:
        new_id = add_student(code, full_name)
    except sqlite3.IntegrityError:
        raise HTTPException(status_code=409, detail="Student code already exists.")
    return {"id": new_id, "code": code, "full_name": full_name}


@router.get("/students/{student_id}")
def student_detail(student_id: int):
    row = get_student_by_id(student_id)
    if not row:
        raise HTTPException(status_code=404, detail="Student not found.")
    return {"id": row[0], "code": row[1], "full_name": row[2]}
