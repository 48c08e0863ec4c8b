from typing import Annotated

from fastapi import APIRouter, Query, status

from bookswap.core.dependencies import BookServiceDep, CurrentUser
from bookswap.schemas.book import BookCreate, BookRead, BookUpdate

router = APIRouter()


@router.get("", response_model=list[BookRead])
async def list_books(
    service: BookServiceDep,
    available_only: bool = True,
    owner_id: Annotated[int | None, Query(gt=0)] = None,
    genre: Annotated[str | None, Query(max_length=50)] = None,
    search: Annotated[str | None, Query(max_length=100)] = None,
    limit: Annotated[int, Query(ge=1, le=100)] = 50,
):
    return await service.list_books(
        available_only=available_only,
        owner_id=owner_id,
        genre=genre,
        search=search,
        limit=limit,
    )


@router.get("/my", response_model=list[BookRead])
async def list_my_books(
    current_user: CurrentUser,
    service: BookServiceDep,
):
    return await service.list_books(available_only=False, owner_id=current_user.id, limit=100)


@router.post("", response_model=BookRead, status_code=status.HTTP_201_CREATED)
async def create_book(
    data: BookCreate,
    current_user: CurrentUser,
    service: BookServiceDep,
):
    return await service.create_book(current_user.id, data)


@router.get("/{book_id}", response_model=BookRead)
async def get_book(
    book_id: int,
    service: BookServiceDep,
):
    return await service.get_book(book_id)


@router.put("/{book_id}", response_model=BookRead)
async def update_book(
    book_id: int,
    data: BookUpdate,
    current_user: CurrentUser,
    service: BookServiceDep,
):
    return await service.update_book(book_id, current_user.id, data)


@router.delete("/{book_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_book(
    book_id: int,
    current_user: CurrentUser,
    service: BookServiceDep,
) -> None:
    await service.delete_book(book_id, current_user.id)
